"""
Single-flight download state machine: runs at most one transfer at a time and
finalizes it into the catalog or the manifest storage.
"""

import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path

from map_manager.core.events import EventBus, ManagerEvent
from map_manager.exceptions import MapManagerError
from map_manager.models.session import DownloadSession, DownloadType, FileToDownload
from map_manager.net.transfer import Transfer, TransferCallbacks
from map_manager.utils.formatting import format_size

log = logging.getLogger(__name__)

Finalizer = Callable[[DownloadSession, Path], None]
CompletionHandler = Callable[[DownloadSession, bool], None]

DEFAULT_PROGRESS_STEP = 1024 * 1024

_LABELS = {
    DownloadType.SERVER_URL: "server URL",
    DownloadType.COUNTRIES_LIST: "list of countries",
    DownloadType.PROVIDED_LIST: "list of provided countries",
}


class DownloadOrchestrator:
    """
    Executes downloads one at a time. The session goes from NONE to the
    requested type on `start()` and always returns to NONE after success,
    failure or cancellation.
    """

    def __init__(
        self,
        transfer_factory: Callable[[], Transfer],
        events: EventBus,
        progress_step: int = DEFAULT_PROGRESS_STEP,
    ):
        """
        Args:
            transfer_factory: Creates a fresh transfer for every download.
            events: Bus used for progress and error notifications.
            progress_step: Minimum byte increment between progress notifications.
        """
        self._transfer_factory = transfer_factory
        self._events = events
        self.progress_step = progress_step
        self._finalizers: dict[DownloadType, Finalizer] = {}
        self._on_complete: CompletionHandler | None = None
        self._session: DownloadSession | None = None
        self._transfer: Transfer | None = None
        self.last_session: DownloadSession | None = None

    def set_finalizer(self, download_type: DownloadType, finalizer: Finalizer) -> None:
        """Registers the step that turns a finished download of a type into state."""
        self._finalizers[download_type] = finalizer

    def set_completion_handler(self, handler: CompletionHandler) -> None:
        """Registers a callback invoked after every finished or failed session."""
        self._on_complete = handler

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> DownloadSession | None:
        return self._session

    @property
    def type(self) -> DownloadType:
        return self._session.type if self._session else DownloadType.NONE

    def start(
        self,
        download_type: DownloadType,
        url: str,
        path: Path,
        file: FileToDownload | None = None,
    ) -> bool:
        """
        Opens a transfer of `url` into `path`.

        Returns:
            False if a session is already active or the transfer could not be
            started, True otherwise.
        """
        if download_type is DownloadType.NONE:
            raise ValueError("Cannot start a download of type NONE.")
        if self._session is not None:
            log.warning(
                f"Download of {url} refused: a {self._session.type.value} "
                "download is already active."
            )
            return False

        session = DownloadSession(
            type=download_type, url=url, path=str(path), file=file
        )
        transfer = self._transfer_factory()
        self._session = session
        self._transfer = transfer
        self.last_session = session
        log.info(f"Downloading [cyan]{url}[/cyan]")

        callbacks = TransferCallbacks(
            on_downloaded=lambda total: self._on_downloaded(session, total),
            on_written=lambda total: self._on_written(session, total),
            on_finished=lambda result: self._on_finished(session, result),
            on_error=lambda message: self._on_error(session, message),
        )
        try:
            transfer.start(url, path, callbacks)
        except (RuntimeError, OSError) as e:
            self._on_error(session, f"Could not start download of {url}: {e}")
            return False
        return True

    def cancel(self) -> bool:
        """
        Aborts the active transfer. Nothing is finalized, so the target stays
        missing and is picked up again by the next scan.
        """
        session, transfer = self._session, self._transfer
        if session is None:
            return False
        self._clear()
        if transfer is not None:
            transfer.cancel()
        session.error = "cancelled"
        log.info(f"Download of {session.url} cancelled.")
        return True

    def _clear(self) -> None:
        self._session = None
        self._transfer = None

    def _label(self, session: DownloadSession) -> str:
        if session.type is DownloadType.FEATURE_DATA:
            return session.file.feature_id if session.file else Path(session.path).name
        return _LABELS.get(session.type, session.type.value)

    def _on_downloaded(self, session: DownloadSession, total: int) -> None:
        if session is not self._session:
            return
        session.downloaded = total
        self._report_progress(session)

    def _on_written(self, session: DownloadSession, total: int) -> None:
        if session is not self._session:
            return
        session.written = total
        self._report_progress(session)

    def _report_progress(self, session: DownloadSession) -> None:
        """Emits a progress text when either counter advanced by a full step."""
        first = session.reported_downloaded < 0
        if (
            not first
            and session.downloaded - session.reported_downloaded
            < self.progress_step
            and session.written - session.reported_written < self.progress_step
        ):
            return
        session.reported_downloaded = session.downloaded
        session.reported_written = session.written
        self._events.emit(
            ManagerEvent.DOWNLOAD_PROGRESS,
            f"Downloading {self._label(session)}: "
            f"{format_size(session.downloaded)} downloaded, "
            f"{format_size(session.written)} written",
        )

    def _on_finished(self, session: DownloadSession, result: Path) -> None:
        if session is not self._session:
            log.debug(f"Ignoring completion of stale transfer {session.url}.")
            return
        ok = True
        finalizer = self._finalizers.get(session.type)
        try:
            if finalizer:
                finalizer(session, result)
        except (MapManagerError, OSError, sqlite3.Error) as e:
            ok = False
            session.error = str(e)
            log.error(f"[red]Could not finalize download of {session.url}: {e}[/red]")
        self._clear()
        if ok:
            log.debug(f"Download of {session.url} finished.")
        else:
            self._events.emit(ManagerEvent.ERROR_MESSAGE, session.error)
        if self._on_complete:
            self._on_complete(session, ok)

    def _on_error(self, session: DownloadSession, message: str) -> None:
        if session is not self._session:
            log.debug(f"Ignoring error of stale transfer {session.url}: {message}")
            return
        session.error = message
        log.error(f"[red]{message}[/red]")
        self._clear()
        self._events.emit(ManagerEvent.ERROR_MESSAGE, message)
        if self._on_complete:
            self._on_complete(session, False)
