import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

from map_manager.cli import app as cli_app
from map_manager.exceptions import StorageUnavailableError

from .conftest import PROVIDED_LIST_URL, provided_manifest, write_manifest

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    config_file = tmp_path / "config" / "config.ini"
    monkeypatch.setattr(cli_app, "CONFIG_FILE", config_file)
    return config_file


def _init(storage: Path) -> None:
    args = ["init", str(storage), "--server-url", "https://maps.example.org/url.json"]
    result = runner.invoke(cli_app.app, [*args, "--require", "postal=3"])
    assert result.exit_code == 0, result.output


def test_init_writes_config(tmp_path: Path, config_file: Path) -> None:
    _init(tmp_path / "maps")

    text = config_file.read_text()
    assert "server_url = https://maps.example.org/url.json" in text
    assert "postal = 3" in text

    result = runner.invoke(cli_app.app, ["validate"])
    assert result.exit_code == 0
    assert "Validated Settings" in result.output


def test_invalid_required_version(tmp_path: Path, config_file: Path) -> None:
    result = runner.invoke(
        cli_app.app, ["init", str(tmp_path / "maps"), "--require", "postal"]
    )
    assert result.exit_code == 1
    assert not config_file.exists()


def test_list_and_subscribe(tmp_path: Path, config_file: Path) -> None:
    storage = tmp_path / "maps"
    _init(storage)

    result = runner.invoke(cli_app.app, ["list", "provided"])
    assert result.exit_code == 1
    assert "refresh" in result.output

    write_manifest(storage, "url.json", {"providedListUrl": PROVIDED_LIST_URL})
    write_manifest(storage, "countries_provided.json", provided_manifest())

    result = runner.invoke(cli_app.app, ["list", "provided"])
    assert result.exit_code == 0
    assert "Estonia" in result.output

    result = runner.invoke(cli_app.app, ["add", "EE"])
    assert result.exit_code == 0
    result = runner.invoke(cli_app.app, ["list", "requested", "--tree"])
    assert "Europe" in result.output
    assert "Finland" not in result.output

    result = runner.invoke(cli_app.app, ["status"])
    assert result.exit_code == 0
    assert "incomplete" in result.output

    result = runner.invoke(cli_app.app, ["clean", "--force"])
    assert result.exit_code == 0
    assert "No unneeded files" in result.output


def test_unavailable_storage_is_an_error(tmp_path: Path, config_file: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    _init(blocker)

    result = runner.invoke(cli_app.app, ["status"])

    assert isinstance(result.exception, StorageUnavailableError)


@pytest.mark.parametrize(
    ("flags", "level"),
    [([], logging.WARNING), (["-v"], logging.INFO), (["-vv"], logging.DEBUG)],
)
def test_verbosity_flags(
    tmp_path: Path, config_file: Path, flags: list[str], level: int
) -> None:
    _init(tmp_path / "maps")

    result = runner.invoke(cli_app.app, [*flags, "validate"])

    assert result.exit_code == 0
    assert logging.getLogger("map_manager").level == level
