import asyncio
from pathlib import Path

from aiohttp import test_utils, web

from map_manager.net.transfer import (
    AiohttpTransfer,
    AiohttpTransferFactory,
    TransferCallbacks,
    partial_path,
)

PAYLOAD = b"tile" * 100_000


async def _run(app: web.Application, destination: Path) -> tuple[str, object, list]:
    """Downloads /data from a local server; returns (outcome, value, progress)."""
    progress: list[int] = []
    async with test_utils.TestServer(app) as server:
        factory = AiohttpTransferFactory(max_attempts=2, base_delay=0)
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        callbacks = TransferCallbacks(
            on_downloaded=lambda total: None,
            on_written=progress.append,
            on_finished=lambda path: done.set_result(("finished", path)),
            on_error=lambda message: done.set_result(("error", message)),
        )
        try:
            factory().start(str(server.make_url("/data")), destination, callbacks)
            outcome, value = await asyncio.wait_for(done, timeout=10)
        finally:
            await factory.close()
    return outcome, value, progress


def _app(*responses: int) -> tuple[web.Application, list[int]]:
    """Serves the given statuses in order, then the payload."""
    calls: list[int] = []

    async def handler(request: web.Request) -> web.Response:
        calls.append(1)
        if len(calls) <= len(responses):
            return web.Response(status=responses[len(calls) - 1])
        return web.Response(body=PAYLOAD)

    app = web.Application()
    app.router.add_get("/data", handler)
    return app, calls


def test_download_lands_at_destination(tmp_path: Path) -> None:
    app, calls = _app()
    destination = tmp_path / "EE" / "territory.bin"

    outcome, value, progress = asyncio.run(_run(app, destination))

    assert outcome == "finished"
    assert value == destination
    assert destination.read_bytes() == PAYLOAD
    assert not partial_path(destination).exists()
    assert progress[-1] == len(PAYLOAD)
    assert calls == [1]


def test_server_errors_are_retried(tmp_path: Path) -> None:
    app, calls = _app(503)
    destination = tmp_path / "world.bin"

    outcome, _, _ = asyncio.run(_run(app, destination))

    assert outcome == "finished"
    assert len(calls) == 2
    assert destination.read_bytes() == PAYLOAD


def test_client_errors_are_not_retried(tmp_path: Path) -> None:
    app, calls = _app(404)
    destination = tmp_path / "world.bin"

    outcome, message, _ = asyncio.run(_run(app, destination))

    assert outcome == "error"
    assert "404" in message
    assert len(calls) == 1
    assert not destination.exists()
    assert not partial_path(destination).exists()


def test_unexpected_failure_is_reported_as_error(tmp_path: Path) -> None:
    def broken_session():
        raise RuntimeError("no session")

    async def scenario() -> tuple[str, object]:
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        callbacks = TransferCallbacks(
            on_downloaded=lambda total: None,
            on_written=lambda total: None,
            on_finished=lambda path: done.set_result(("finished", path)),
            on_error=lambda message: done.set_result(("error", message)),
        )
        transfer = AiohttpTransfer(broken_session, max_attempts=1, base_delay=0)
        transfer.start("http://localhost/data", tmp_path / "world.bin", callbacks)
        return await asyncio.wait_for(done, timeout=5)

    outcome, message = asyncio.run(scenario())

    assert outcome == "error"
    assert "RuntimeError: no session" in message
    assert not partial_path(tmp_path / "world.bin").exists()
