"""
The map manager facade: owns the catalog, the availability resolver, the
download orchestrator, the update checker and the retention scanner, and
exposes the query and command surface used by the CLI and the serving layer.
"""

import asyncio
import json
import logging
import os
import sqlite3
from collections import deque
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from map_manager.core.availability import AvailabilityResolver, ResolvedState
from map_manager.core.events import EventBus, Listener, ManagerEvent, MissingStatus
from map_manager.core.feature_graph import describe_validation_error
from map_manager.core.orchestrator import DownloadOrchestrator
from map_manager.core.retention import RetentionScanner
from map_manager.core.update_checker import UpdateChecker
from map_manager.exceptions import ManifestParseError, MapManagerError
from map_manager.models.config import ManagerConfig
from map_manager.models.feature import ServerUrlManifest
from map_manager.models.session import (
    DownloadSession,
    DownloadType,
    FileToDownload,
    UpdateRecord,
)
from map_manager.net.transfer import AiohttpTransferFactory, Transfer
from map_manager.storage.catalog import CatalogStore
from map_manager.storage.manifests import (
    PROVIDED_FILE,
    REQUESTED_FILE,
    SERVER_URL_FILE,
    ManifestStore,
)

log = logging.getLogger(__name__)

_MANIFEST_TARGETS = {
    DownloadType.SERVER_URL: SERVER_URL_FILE,
    DownloadType.COUNTRIES_LIST: PROVIDED_FILE,
    DownloadType.PROVIDED_LIST: PROVIDED_FILE,
}


class SyncMode(Enum):
    """What a chain of downloads is meant to achieve."""

    MISSING = "missing"
    UPDATES = "updates"
    PROVIDED = "provided"


def _validate_server_manifest(data: dict[str, Any]) -> ServerUrlManifest:
    try:
        return ServerUrlManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestParseError(
            f"Invalid {SERVER_URL_FILE}: {describe_validation_error(e)}"
        ) from e


class Manager:
    """
    Keeps installed datasets in line with the subscription. All methods run on
    one owner context (the asyncio event loop when transfers are real), so no
    locking is needed.
    """

    def __init__(
        self,
        config: ManagerConfig,
        transfer_factory: Callable[[], Transfer] | None = None,
    ):
        """
        Args:
            config: Validated settings.
            transfer_factory: Creates transfers; defaults to aiohttp-based ones.
        """
        self.events = EventBus()
        self._owns_transfer_factory = transfer_factory is None
        self._transfer_factory = transfer_factory
        self._storage_available = False
        self._downloading = False
        self._missing = False
        self._missing_info = ""
        self._availability_signature: tuple | None = None
        self._state: ResolvedState | None = None
        self._last_updates: list[UpdateRecord] = []
        self._queue: deque[FileToDownload] = deque()
        self._mode: SyncMode | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._apply_settings(config)
        self.check_storage_available()

    # --- Settings & storage -------------------------------------------------

    def _apply_settings(self, config: ManagerConfig) -> None:
        """(Re)creates every component for the given settings."""
        self.config = config
        self.root = config.storage_root
        if self._owns_transfer_factory:
            if isinstance(self._transfer_factory, AiohttpTransferFactory):
                self._transfer_factory.configure(
                    config.max_attempts, config.retry_delay
                )
            else:
                self._transfer_factory = AiohttpTransferFactory(
                    config.max_attempts, config.retry_delay
                )
        self.manifests = ManifestStore(self.root)
        self.resolver = AvailabilityResolver(config.required_versions)
        self.update_checker = UpdateChecker()
        self.catalog: CatalogStore | None = None
        self.retention: RetentionScanner | None = None
        self.orchestrator = DownloadOrchestrator(
            self._transfer_factory, self.events, config.progress_step
        )
        self.orchestrator.set_finalizer(
            DownloadType.SERVER_URL, self._finalize_server_url
        )
        self.orchestrator.set_finalizer(
            DownloadType.COUNTRIES_LIST, self._finalize_countries_list
        )
        self.orchestrator.set_finalizer(
            DownloadType.PROVIDED_LIST, self._finalize_provided_list
        )
        self.orchestrator.set_finalizer(
            DownloadType.FEATURE_DATA, self._finalize_feature
        )
        self.orchestrator.set_completion_handler(self._on_download_complete)

    def reload_settings(self, config: ManagerConfig) -> None:
        """
        Switches to new settings: any active download is aborted, all in-memory
        state is dropped and storage is rescanned from scratch.
        """
        log.info("Reloading settings.")
        self.close()
        self._state = None
        self._last_updates = []
        self._apply_settings(config)
        self._refresh_storage(force_scan=True)

    def _probe_storage(self) -> bool:
        """Checks that the storage root exists (or can be created) and is writable."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            writable = os.access(self.root, os.W_OK | os.X_OK)
            if not self.root.is_dir() or not writable:
                return False
            probe = self.root / ".write-test"
            probe.write_bytes(b"")
            probe.unlink()
        except OSError as e:
            log.warning(
                f"[yellow]Storage '{self.root}' is not available: {e}[/yellow]"
            )
            return False
        return True

    def check_storage_available(self) -> bool:
        """Probes the storage root and rescans when its availability changes."""
        return self._refresh_storage(force_scan=False)

    def _refresh_storage(self, force_scan: bool) -> bool:
        available = self._probe_storage()
        if available and self.catalog is None:
            try:
                self.catalog = CatalogStore(self.root)
                self.retention = RetentionScanner(self.root, self.catalog)
            except (sqlite3.Error, OSError) as e:
                log.error(f"[red]Could not open the catalog database: {e}[/red]")
                available = False
        if not available:
            self.catalog = None
            self.retention = None

        changed = available != self._storage_available
        self._storage_available = available
        if changed:
            log.info(f"Storage available: {available}")
            self.events.emit(ManagerEvent.STORAGE_AVAILABLE_CHANGED, available)
            if not available and self.orchestrator.active:
                self.close()
        if changed or force_scan:
            self.scan(force=True)
        return available

    @property
    def storage_available(self) -> bool:
        return self._storage_available

    # --- Scanning -----------------------------------------------------------

    def _load_manifest(self, name: str, problems: list[str]) -> dict[str, Any]:
        try:
            return self.manifests.load(name)
        except ManifestParseError as e:
            log.warning(f"[yellow]{e}[/yellow]")
            problems.append(str(e))
            return {}

    def _load_server_manifest(self, problems: list[str]) -> ServerUrlManifest | None:
        data = self._load_manifest(SERVER_URL_FILE, problems)
        if not data:
            return None
        try:
            return _validate_server_manifest(data)
        except ManifestParseError as e:
            problems.append(str(e))
            return None

    def scan(self, force: bool = False) -> ResolvedState | None:
        """
        Rebuilds the reconciled state from the manifests and the catalog, and
        emits notifications for whatever changed (everything when forced).
        """
        if not self._storage_available or self.catalog is None:
            self._state = None
            self._update_flags(force)
            return None

        problems: list[str] = []
        provided = self._load_manifest(PROVIDED_FILE, problems)
        requested = self._load_manifest(REQUESTED_FILE, problems)
        server = self._load_server_manifest(problems)
        state = self.resolver.resolve(
            provided, requested, self.catalog.entries(), server
        )
        state.graph.problems[:0] = problems
        self._state = state
        self._update_flags(force)
        return state

    def _update_flags(self, force: bool) -> None:
        state = self._state
        missing = state.missing if state else False
        info = state.missing_info() if state else ""
        if force or missing != self._missing or info != self._missing_info:
            self._missing = missing
            self._missing_info = info
            self.events.emit(ManagerEvent.MISSING_CHANGED, MissingStatus(missing, info))

        signature = None
        if state:
            signature = tuple(
                (f.id, f.available, f.compatible) for f in state.graph.sorted_features()
            ) + (tuple(sorted(state.available_ids)),)
        if force or signature != self._availability_signature:
            self._availability_signature = signature
            self.events.emit(ManagerEvent.AVAILABILITY_CHANGED)
            self.events.emit(ManagerEvent.DATA_PATHS_CHANGED, self.data_paths())

    @property
    def state(self) -> ResolvedState | None:
        return self._state

    @property
    def missing(self) -> bool:
        return self._missing

    @property
    def missing_info(self) -> str:
        return self._missing_info

    @property
    def downloading(self) -> bool:
        return self._downloading or self.orchestrator.active

    def _set_downloading(self, value: bool) -> None:
        if value == self._downloading:
            return
        self._downloading = value
        if value:
            self._idle.clear()
        else:
            self._idle.set()
        self.events.emit(ManagerEvent.DOWNLOADING_CHANGED, value)

    def subscribe(self, event: ManagerEvent, listener: Listener) -> Callable[[], None]:
        """Registers a listener for a manager notification."""
        return self.events.subscribe(event, listener)

    def _error(self, message: str) -> bool:
        log.error(f"[red]{message}[/red]")
        self.events.emit(ManagerEvent.ERROR_MESSAGE, message)
        return False

    # --- Subscription -------------------------------------------------------

    def add_country(self, country_id: str) -> bool:
        """Subscribes to a provided country together with its sub-features."""
        if not self._storage_available or self._state is None:
            return self._error("Storage is not available.")
        if self.downloading:
            return self._error("A download is in progress, cannot subscribe.")
        state = self._state
        if country_id not in state.provided_ids:
            return self._error(
                f"'{country_id}' is not in the list of provided countries."
            )
        try:
            requested = self.manifests.load(REQUESTED_FILE)
        except ManifestParseError as e:
            return self._error(f"Cannot change the subscription: {e}")

        feature = state.graph.get(country_id)
        ids = [country_id] + [
            sub_id for sub_id in feature.sub_features if sub_id in state.provided_ids
        ]
        for fid in ids:
            requested[fid] = state.graph.get(fid).record.to_manifest()
        self.manifests.save(REQUESTED_FILE, requested)
        log.info(f"Subscribed to [cyan]{feature.pretty_name}[/cyan].")
        self.events.emit(ManagerEvent.SUBSCRIPTION_CHANGED)
        self.scan()
        return True

    def remove_country(self, country_id: str) -> bool:
        """Drops a country and its sub-features from the subscription."""
        if not self._storage_available:
            return self._error("Storage is not available.")
        if self.downloading:
            return self._error("A download is in progress, cannot unsubscribe.")
        try:
            requested = self.manifests.load(REQUESTED_FILE)
        except ManifestParseError as e:
            return self._error(f"Cannot change the subscription: {e}")
        removed = [
            fid
            for fid in requested
            if fid == country_id or fid.startswith(country_id + "/")
        ]
        if not removed:
            return False
        for fid in removed:
            del requested[fid]
        self.manifests.save(REQUESTED_FILE, requested)
        log.info(f"Unsubscribed from [cyan]{country_id}[/cyan].")
        self.events.emit(ManagerEvent.SUBSCRIPTION_CHANGED)
        self.scan()
        return True

    # --- Queries ------------------------------------------------------------

    def check_provided_available(self) -> bool:
        """Whether a list of provided countries has been downloaded."""
        return bool(self._state and self._state.provided_ids)

    def _countries_json(self, kind: str, tree: bool) -> str:
        return self._state.countries_json(kind, tree) if self._state else "[]"

    def get_available_countries(self, tree: bool = False) -> str:
        return self._countries_json("available", tree)

    def get_requested_countries(self, tree: bool = False) -> str:
        return self._countries_json("requested", tree)

    def get_provided_countries(self, tree: bool = False) -> str:
        return self._countries_json("provided", tree)

    def get_country_details(self, country_id: str) -> str:
        details = self._state.country_details(country_id) if self._state else {}
        return json.dumps(details)

    def is_country_requested(self, country_id: str) -> bool:
        return bool(self._state and self._state.is_requested(country_id))

    def is_country_available(self, country_id: str) -> bool:
        return bool(self._state and self._state.is_available(country_id))

    def is_country_compatible(self, country_id: str) -> bool:
        return bool(self._state and self._state.is_compatible(country_id))

    def updates_found(self) -> str:
        """The updates found by the last provided list refresh, as a JSON array."""
        return UpdateChecker.to_json(self._last_updates)

    def full_path(self, path: str) -> str:
        """Transforms a path relative to the storage root into an absolute one."""
        return str(self.root / path)

    def is_registered(self, path: str) -> tuple[bool, str, str]:
        """Catalog lookup for the serving layer: (found, version, datetime)."""
        if self.catalog is None:
            return False, "", ""
        return self.catalog.is_registered(path)

    def data_paths(self) -> dict[str, list[str]]:
        """Absolute paths of installed subscribed data, by feature type."""
        return self._state.data_paths(self.root) if self._state else {}

    # --- Downloads ----------------------------------------------------------

    def get_countries(self) -> bool:
        """Fetches the manifests and downloads missing data of subscribed countries."""
        return self._start_chain(SyncMode.MISSING)

    def get_updates(self) -> bool:
        """Like get_countries(), but also replaces outdated data."""
        return self._start_chain(SyncMode.UPDATES)

    def update_provided(self) -> bool:
        """
        Refreshes the list of provided countries and checks installed data for
        updates. Results are available via updates_found() and UPDATES_FOUND.
        """
        return self._start_chain(SyncMode.PROVIDED)

    def _start_chain(self, mode: SyncMode) -> bool:
        if not self._storage_available:
            return self._error("Storage is not available, cannot download.")
        if self.downloading:
            return self._error("A download is already in progress.")

        if self.config.server_url:
            first = DownloadType.SERVER_URL
        elif self.manifests.exists(SERVER_URL_FILE):
            first = self._list_type(mode)
        else:
            return self._error("No server URL configured.")

        self._mode = mode
        self._set_downloading(True)
        return self._start_manifest(first)

    @staticmethod
    def _list_type(mode: SyncMode) -> DownloadType:
        if mode is SyncMode.PROVIDED:
            return DownloadType.PROVIDED_LIST
        return DownloadType.COUNTRIES_LIST

    def _start_manifest(self, download_type: DownloadType) -> bool:
        if download_type is DownloadType.SERVER_URL:
            url = self.config.server_url
        else:
            problems: list[str] = []
            server = self._load_server_manifest(problems)
            if server is None:
                self._finish_chain()
                return self._error(
                    "; ".join(problems) or f"{SERVER_URL_FILE} is missing."
                )
            url = server.provided_list_url
        destination = self.root / f"{_MANIFEST_TARGETS[download_type]}.download"
        return self.orchestrator.start(download_type, url, destination)

    def _start_next_file(self) -> None:
        """Starts the next queued feature download, or ends the chain."""
        while self._queue:
            item = self._queue.popleft()
            if not item.url:
                self._error(f"No download URL known for '{item.feature_id}'.")
                continue
            self.orchestrator.start(
                DownloadType.FEATURE_DATA, item.url, self.root / item.path, item
            )
            return
        self._finish_chain()

    def _finish_chain(self) -> None:
        self._queue.clear()
        self._mode = None
        self._set_downloading(False)

    def _on_download_complete(self, session: DownloadSession, ok: bool) -> None:
        """Chains the next download step after a session ended."""
        if not ok:
            self._finish_chain()
            self.scan()
            return

        if session.type is DownloadType.SERVER_URL:
            self._start_manifest(self._list_type(self._mode or SyncMode.MISSING))
        elif session.type is DownloadType.COUNTRIES_LIST:
            state = self._state
            files = state.missing_files() if state else []
            if state and self._mode is SyncMode.UPDATES:
                files += state.outdated_files()
            self._queue = deque(files)
            log.info(f"{len(files)} file(s) to download.")
            self._start_next_file()
        elif session.type is DownloadType.FEATURE_DATA:
            self._start_next_file()
        else:
            self._finish_chain()

    # --- Finalizers ---------------------------------------------------------

    def _finalize_server_url(self, session: DownloadSession, result: Path) -> None:
        self.manifests.install(SERVER_URL_FILE, result, _validate_server_manifest)
        log.debug("Server URL descriptor updated.")

    def _finalize_countries_list(self, session: DownloadSession, result: Path) -> None:
        self.manifests.install(PROVIDED_FILE, result)
        self.scan()

    def _finalize_provided_list(self, session: DownloadSession, result: Path) -> None:
        self.manifests.install(PROVIDED_FILE, result)
        state = self.scan()
        self._last_updates = self.update_checker.check(state) if state else []
        self.events.emit(ManagerEvent.UPDATES_FOUND, self.updates_found())

    def _finalize_feature(self, session: DownloadSession, result: Path) -> None:
        item = session.file
        if item is None:
            raise MapManagerError(f"Downloaded {session.url} has no target feature.")
        if self.catalog is None:
            raise MapManagerError("Catalog is not available.")
        self.catalog.register(item.path, item.version, item.datetime)
        log.info(f"[green]✓ Installed {item.feature_id} ({item.version}).[/green]")
        self.scan()

    # --- Retention ----------------------------------------------------------

    def get_non_needed_files_list(self) -> list[str]:
        """
        Lists files not needed by any subscribed or available feature. Empty,
        with a negative size, while downloads are active.
        """
        if self.retention is None:
            return []
        snapshot = self.retention.list_non_needed(self._state, self.downloading)
        return list(snapshot.files)

    def get_non_needed_files_generation(self) -> int | None:
        """Token of the last non-needed files listing, for delete_non_needed_files()."""
        if self.retention is None or self.retention.last_snapshot is None:
            return None
        return self.retention.last_snapshot.generation

    def get_non_needed_files_size(self) -> int:
        """Size found by the last get_non_needed_files_list() call; -1 if unknown."""
        if self.retention is None or self.retention.last_snapshot is None:
            return -1
        return self.retention.last_snapshot.total_size

    def delete_non_needed_files(
        self, files: list[str], generation: int | None = None
    ) -> bool:
        """
        Deletes the files listed by the last get_non_needed_files_list() call.
        `generation`, if given, must be the token of that listing.
        """
        if self.retention is None:
            return self._error("Storage is not available, cannot delete files.")
        if self.downloading:
            return self._error("A download is in progress, cannot delete files.")
        deleted = self.retention.delete(files, self.downloading, generation)
        if deleted:
            self.scan()
        return deleted

    # --- Lifecycle ----------------------------------------------------------

    async def wait_until_idle(self) -> None:
        """Waits until the current chain of downloads has ended."""
        await self._idle.wait()

    def close(self) -> None:
        """Aborts any active download without registering partial data."""
        if self.orchestrator.cancel():
            log.info("Active download aborted.")
        self._finish_chain()

    async def aclose(self) -> None:
        """Closes the manager and the network session it owns."""
        self.close()
        if self._owns_transfer_factory and isinstance(
            self._transfer_factory, AiohttpTransferFactory
        ):
            await self._transfer_factory.close()
