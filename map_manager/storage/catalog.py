"""
Manages the SQLite database that records which data files are installed and in
which version.
"""

import logging
import os
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from map_manager.models.feature import CatalogEntry

log = logging.getLogger(__name__)

T = TypeVar("T")

CATALOG_FILE_NAME = "files.sqlite"


class CatalogStore:
    """
    Durable registry mapping an installed file's relative path to its version
    and timestamp. Recreates its schema if the database goes missing or
    turns out to be corrupt.
    """

    def __init__(self, storage_root: Path):
        self.db_path = storage_root / CATALOG_FILE_NAME
        self._run(self._create_schema)

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with the catalog's PRAGMA settings."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    @staticmethod
    def _create_schema(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS files (
                path TEXT PRIMARY KEY NOT NULL,
                version TEXT NOT NULL,
                datetime TEXT NOT NULL
            );
            """
        )

    def _initialize_db(self) -> None:
        """Creates the database and table if they don't exist."""
        conn = self._get_connection()
        try:
            with conn:
                self._create_schema(conn)
        finally:
            conn.close()

    def _reset(self) -> None:
        """Moves a broken database aside and starts over with an empty catalog."""
        if self.db_path.exists():
            broken = self.db_path.with_name(
                f"{self.db_path.name}.broken-{int(time.time())}"
            )
            try:
                os.replace(self.db_path, broken)
                log.warning(
                    f"[yellow]Catalog database was corrupt, moved to "
                    f"'{broken.name}'.[/yellow]"
                )
            except OSError as e:
                log.error(f"Could not move corrupt catalog aside: {e}")
                self.db_path.unlink(missing_ok=True)
        for suffix in ("-wal", "-shm", "-journal"):
            Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
        self._initialize_db()

    def _run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        """
        Runs a database operation, healing the database once if the file or
        schema is missing or the file is corrupt.
        """
        for attempt in (1, 2):
            try:
                if not self.db_path.exists():
                    self._initialize_db()
                conn = self._get_connection()
                try:
                    with conn:
                        return func(conn)
                finally:
                    conn.close()
            except sqlite3.DatabaseError as e:
                if attempt == 2:
                    raise
                log.debug(f"Catalog operation failed ({e}), reinitializing schema.")
                missing_table = "no such table" in str(e)
                if isinstance(e, sqlite3.OperationalError) and missing_table:
                    self._initialize_db()
                else:
                    self._reset()
        raise AssertionError("unreachable")

    def register(self, path: str, version: str, datetime: str) -> None:
        """Records `path` as installed, replacing any previous entry for it."""
        self._run(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO files (path, version, datetime) "
                "VALUES (?, ?, ?)",
                (path, version, datetime),
            )
        )
        log.debug(f"Registered '{path}' version {version} ({datetime}).")

    def lookup(self, path: str) -> CatalogEntry | None:
        """Returns the catalog entry for `path`, or None if it is not installed."""
        row = self._run(
            lambda conn: conn.execute(
                "SELECT path, version, datetime FROM files WHERE path = ?", (path,)
            ).fetchone()
        )
        return CatalogEntry(*row) if row else None

    def is_registered(self, path: str) -> tuple[bool, str, str]:
        """Lookup in the (found, version, datetime) form used by the serving layer."""
        entry = self.lookup(path)
        if entry is None:
            return False, "", ""
        return True, entry.version, entry.datetime

    def remove(self, path: str) -> bool:
        """Drops the entry for `path`. Returns True if an entry existed."""
        removed = self._run(
            lambda conn: conn.execute(
                "DELETE FROM files WHERE path = ?", (path,)
            ).rowcount
        )
        if removed:
            log.debug(f"Removed '{path}' from the catalog.")
        return removed > 0

    def entries(self) -> dict[str, CatalogEntry]:
        """Returns all catalog entries keyed by path."""
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT path, version, datetime FROM files ORDER BY path"
            ).fetchall()
        )
        return {row[0]: CatalogEntry(*row) for row in rows}

    def count(self) -> int:
        return self._run(
            lambda conn: conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
        )

    def vacuum(self) -> bool:
        """Optimizes the database file by rebuilding it."""
        try:
            self._run(lambda conn: conn.execute("ANALYZE;"))
            conn = self._get_connection()
            try:
                conn.execute("VACUUM;")
            finally:
                conn.close()
            log.info("Catalog database optimized successfully.")
            return True
        except sqlite3.Error as e:
            log.error(f"Database vacuum failed: {e}")
            return False
