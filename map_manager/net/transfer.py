"""
Handles the low-level downloading of files over HTTP. Transfers run as asyncio
tasks and report progress and their outcome through callbacks.
"""

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import aiofiles
import aiohttp

log = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


def partial_path(destination: Path) -> Path:
    """Where a transfer keeps its data until the download is complete."""
    return destination.with_name(destination.name + PARTIAL_SUFFIX)


@dataclass
class TransferCallbacks:
    """
    Receivers for transfer events. Exactly one of `on_finished` and
    `on_error` is called per transfer, unless it is cancelled.
    """

    on_downloaded: Callable[[int], None]
    on_written: Callable[[int], None]
    on_finished: Callable[[Path], None]
    on_error: Callable[[str], None]


class Transfer(Protocol):
    """A single file transfer."""

    def start(self, url: str, destination: Path, callbacks: TransferCallbacks) -> None:
        ...

    def cancel(self) -> None:
        ...


class AiohttpTransfer:
    """A file transfer with retry logic, streaming into a partial file."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(
        self,
        session_provider: Callable[[], aiohttp.ClientSession],
        max_attempts: int = 3,
        base_delay: float = 1.5,
    ):
        self._session_provider = session_provider
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._task: asyncio.Task | None = None
        self._partial: Path | None = None

    def start(self, url: str, destination: Path, callbacks: TransferCallbacks) -> None:
        """Starts the transfer on the running event loop."""
        if self._task is not None:
            raise RuntimeError("Transfer has already been started.")
        self._partial = partial_path(destination)
        self._task = asyncio.get_running_loop().create_task(
            self._run(url, destination, callbacks)
        )

    def cancel(self) -> None:
        """Aborts the transfer and removes its partial file. No callback fires."""
        if self._task and not self._task.done():
            self._task.cancel()
            log.debug("Transfer cancelled.")
        if self._partial is not None:
            self._partial.unlink(missing_ok=True)

    async def _run(
        self, url: str, destination: Path, callbacks: TransferCallbacks
    ) -> None:
        try:
            await self._download(url, destination, callbacks)
        except asyncio.CancelledError:
            partial_path(destination).unlink(missing_ok=True)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            partial_path(destination).unlink(missing_ok=True)
            callbacks.on_error(f"Download of {url} failed: {e or type(e).__name__}")
            return
        except Exception as e:
            partial_path(destination).unlink(missing_ok=True)
            log.exception(f"Unexpected error while downloading {url}")
            callbacks.on_error(f"Download of {url} failed: {type(e).__name__}: {e}")
            return
        callbacks.on_finished(destination)

    async def _download(
        self, url: str, destination: Path, callbacks: TransferCallbacks
    ) -> None:
        """Downloads `url` into `destination`, retrying transient failures."""
        partial = partial_path(destination)
        await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)

        last_exception: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                session = self._session_provider()
                async with session.get(url, allow_redirects=True) as response:
                    response.raise_for_status()
                    downloaded = 0
                    written = 0
                    async with aiofiles.open(partial, "wb") as f:
                        async for chunk in response.content.iter_chunked(
                            self.CHUNK_SIZE
                        ):
                            downloaded += len(chunk)
                            callbacks.on_downloaded(downloaded)
                            await f.write(chunk)
                            written += len(chunk)
                            callbacks.on_written(written)
                        await f.flush()
                await asyncio.to_thread(os.replace, partial, destination)
                return
            except aiohttp.ClientResponseError as e:
                if 400 <= e.status < 500:
                    raise
                last_exception = e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e

            log.debug(
                f"Download attempt {attempt}/{self.max_attempts} for "
                f"'{destination.name}' failed: {last_exception}. Retrying..."
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        if last_exception:
            raise last_exception


class AiohttpTransferFactory:
    """
    Creates transfers sharing one aiohttp ClientSession. The session is created
    lazily on first use and closed with `close()`.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.5):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._session: aiohttp.ClientSession | None = None

    def configure(self, max_attempts: int, base_delay: float) -> None:
        """Applies new retry settings to transfers created from now on."""
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=2,
                ttl_dns_cache=600,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            log.debug("Created download session.")
        return self._session

    def __call__(self) -> AiohttpTransfer:
        return AiohttpTransfer(self._get_session, self.max_attempts, self.base_delay)

    async def close(self) -> None:
        """Closes the shared ClientSession."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
            log.debug("Download session closed.")
