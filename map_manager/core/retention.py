"""
Two-phase reclamation of storage occupied by files no subscribed feature needs:
list the files first, then delete exactly that list.
"""

import logging
import os
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from map_manager.core.availability import ResolvedState
from map_manager.models.session import RetentionSnapshot
from map_manager.storage.catalog import CATALOG_FILE_NAME, CatalogStore
from map_manager.storage.manifests import MANIFEST_FILES

log = logging.getLogger(__name__)

BOOKKEEPING_FILES = frozenset(
    {
        *MANIFEST_FILES,
        CATALOG_FILE_NAME,
        f"{CATALOG_FILE_NAME}-wal",
        f"{CATALOG_FILE_NAME}-shm",
        f"{CATALOG_FILE_NAME}-journal",
    }
)


class RetentionScanner:
    """
    Lists files under the storage root that no requested or available feature
    references, and deletes them only when asked with that same list.
    """

    def __init__(self, storage_root: Path, catalog: CatalogStore):
        self.root = storage_root
        self.catalog = catalog
        self._generation = 0
        self._snapshot: RetentionSnapshot | None = None

    @property
    def last_snapshot(self) -> RetentionSnapshot | None:
        return self._snapshot

    @staticmethod
    def needed_paths(state: ResolvedState) -> set[str]:
        """Data paths of every requested or available feature and their dependencies."""
        ids = set(state.required_ids) | state.requested_ids | state.available_ids
        return {state.graph.get(fid).path for fid in ids if fid in state.graph}

    def _walk(self) -> Iterable[tuple[str, int]]:
        """Yields (relative POSIX path, size) of every regular file under the root."""
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            for name in sorted(filenames):
                full = Path(dirpath) / name
                if full.is_symlink() or not full.is_file():
                    continue
                rel = PurePosixPath(full.relative_to(self.root).as_posix())
                try:
                    size = full.stat().st_size
                except OSError as e:
                    log.debug(f"Could not stat '{full}': {e}")
                    continue
                yield str(rel), size

    def list_non_needed(
        self, state: ResolvedState | None, downloading: bool
    ) -> RetentionSnapshot:
        """
        Composes the list of non-needed files and their total size. While a
        download is active, the list is empty and the size is -1, as partially
        downloaded data cannot be told apart from garbage.
        """
        self._generation += 1
        if downloading or state is None:
            if downloading:
                log.info("Cannot list non-needed files while downloading.")
            self._snapshot = RetentionSnapshot(generation=self._generation)
            return self._snapshot

        needed = self.needed_paths(state)
        files: list[str] = []
        total_size = 0
        for rel, size in self._walk():
            if rel in BOOKKEEPING_FILES:
                continue
            if any(rel == p or rel.startswith(p + "/") for p in needed):
                continue
            files.append(rel)
            total_size += size

        self._snapshot = RetentionSnapshot(
            generation=self._generation, files=tuple(files), total_size=total_size
        )
        log.debug(
            f"Found {len(files)} non-needed file(s), {total_size} bytes "
            f"(generation {self._generation})."
        )
        return self._snapshot

    def delete(
        self,
        files: Iterable[str],
        downloading: bool,
        generation: int | None = None,
    ) -> bool:
        """
        Deletes the files of the last snapshot.

        Args:
            files: Must contain exactly the files of the last snapshot.
            downloading: Whether a download is currently active.
            generation: Optional snapshot token that must match as well.

        Returns:
            True if the request matched the snapshot and every file was removed,
            False otherwise. A refused request has no side effects.
        """
        snapshot = self._snapshot
        requested = set(files)
        if snapshot is None or not snapshot.determinate:
            log.warning("Refusing to delete files: no valid list of non-needed files.")
            return False
        if downloading:
            log.warning("Refusing to delete files while downloading.")
            return False
        if generation is not None and generation != snapshot.generation:
            log.warning(
                f"Refusing to delete files: list generation {generation} is stale "
                f"(current {snapshot.generation})."
            )
            return False
        if requested != set(snapshot.files):
            log.warning("Refusing to delete files: list does not match the last scan.")
            return False

        self._snapshot = None
        success = True
        for rel in snapshot.files:
            full = self.root / rel
            try:
                full.unlink(missing_ok=True)
            except OSError as e:
                log.error(f"[red]Failed to delete '{rel}': {e}[/red]")
                success = False
                continue
            self.catalog.remove(rel)
            self._prune_empty_dirs(full.parent)
        log.info(f"Deleted {len(snapshot.files)} non-needed file(s).")
        return success

    def _prune_empty_dirs(self, directory: Path) -> None:
        """Removes emptied directories up to, but excluding, the storage root."""
        root = self.root.resolve()
        current = directory.resolve()
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent
