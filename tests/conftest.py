"""Shared fixtures: an in-memory transfer double and sample manifests."""

import json
from pathlib import Path
from typing import Any

import pytest

from map_manager.core.manager import Manager
from map_manager.models.config import ManagerConfig
from map_manager.net.transfer import TransferCallbacks

SERVER_URL = "https://maps.example.org/url.json"
PROVIDED_LIST_URL = "https://maps.example.org/v1/countries_provided.json"

# Data file of each sample feature, relative to the storage root
PATHS = {
    "world": "world.bin",
    "EE": "EE/territory.bin",
    "EE/postal": "EE/postal.bin",
    "FI": "FI/territory.bin",
}


class FakeTransfer:
    """Records what it was asked to fetch; the test decides how it ends."""

    def __init__(self) -> None:
        self.url: str | None = None
        self.destination: Path | None = None
        self.callbacks: TransferCallbacks | None = None
        self.cancelled = False

    def start(self, url: str, destination: Path, callbacks: TransferCallbacks) -> None:
        self.url = url
        self.destination = destination
        self.callbacks = callbacks

    def cancel(self) -> None:
        self.cancelled = True

    def finish(self, content: bytes | str = b"data") -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        self.destination.write_bytes(content)
        self.callbacks.on_downloaded(len(content))
        self.callbacks.on_written(len(content))
        self.callbacks.on_finished(self.destination)

    def fail(self, message: str = "connection reset") -> None:
        self.callbacks.on_error(message)


class FakeTransferFactory:
    def __init__(self) -> None:
        self.transfers: list[FakeTransfer] = []

    def __call__(self) -> FakeTransfer:
        transfer = FakeTransfer()
        self.transfers.append(transfer)
        return transfer

    @property
    def last(self) -> FakeTransfer:
        return self.transfers[-1]


def feature_entry(
    feature_type: str,
    name: str,
    version: str = "1",
    datetime: str = "2024-01-01T00:00:00",
    dependencies: list[str] | None = None,
    size: int = 100,
    path: str | None = None,
) -> dict[str, Any]:
    entry = {
        "type": feature_type,
        "prettyName": name,
        "version": version,
        "datetime": datetime,
        "dependencies": dependencies or [],
        "size": size,
    }
    if path:
        entry["path"] = path
    return entry


def provided_manifest(estonia_version: str = "1") -> dict[str, Any]:
    """Estonia with a postal sub-feature, Finland, and a shared world layer."""
    return {
        "world": feature_entry(
            "coastline", "World Coastline", size=1000, path=PATHS["world"]
        ),
        "EE": feature_entry(
            "territory",
            "Europe / Estonia",
            estonia_version,
            dependencies=["world"],
            path=PATHS["EE"],
        ),
        "EE/postal": feature_entry(
            "postal", "Europe / Estonia / Postal", size=10, path=PATHS["EE/postal"]
        ),
        "FI": feature_entry(
            "territory",
            "Europe / Finland",
            dependencies=["world"],
            size=200,
            path=PATHS["FI"],
        ),
    }


def write_manifest(root: Path, name: str, data: dict[str, Any]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / name).write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def transfers() -> FakeTransferFactory:
    return FakeTransferFactory()


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    return tmp_path / "maps"


@pytest.fixture
def config(storage_root: Path) -> ManagerConfig:
    return ManagerConfig(storage_root=storage_root, server_url=SERVER_URL)


@pytest.fixture
def manager(config: ManagerConfig, transfers: FakeTransferFactory) -> Manager:
    """A manager whose storage already holds the server descriptor and list."""
    write_manifest(
        config.storage_root, "url.json", {"providedListUrl": PROVIDED_LIST_URL}
    )
    write_manifest(config.storage_root, "countries_provided.json", provided_manifest())
    return Manager(config, transfer_factory=transfers)
