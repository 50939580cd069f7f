"""
Records describing download work: the active session, the files to fetch, the
updates found and the retention snapshots.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DownloadType(Enum):
    """Kinds of download the orchestrator can run, one at a time."""

    NONE = "none"
    COUNTRIES_LIST = "countries_list"
    SERVER_URL = "server_url"
    PROVIDED_LIST = "provided_list"
    FEATURE_DATA = "feature_data"


class FileRole(Enum):
    """Why a file is scheduled for download."""

    MISSING = "missing"
    INCOMPATIBLE = "incompatible"
    UPDATE = "update"


@dataclass(frozen=True)
class FileToDownload:
    """A feature data file that has to be fetched to satisfy the subscription."""

    feature_id: str
    url: str
    path: str
    version: str
    datetime: str
    size: int = 0
    role: FileRole = FileRole.MISSING


@dataclass
class DownloadSession:
    """State of the single active download."""

    type: DownloadType
    url: str
    path: str
    file: FileToDownload | None = None
    downloaded: int = 0
    written: int = 0
    error: str | None = None
    reported_downloaded: int = field(default=-1, repr=False)
    reported_written: int = field(default=-1, repr=False)


@dataclass(frozen=True)
class UpdateRecord:
    """A requested, installed feature for which a different version is provided."""

    feature_id: str
    old_version: str
    new_version: str

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.feature_id,
            "oldVersion": self.old_version,
            "newVersion": self.new_version,
        }


@dataclass(frozen=True)
class RetentionSnapshot:
    """
    Result of a non-needed files scan. `total_size` is -1 when the scan could
    not be done because a download was active.
    """

    generation: int
    files: tuple[str, ...] = ()
    total_size: int = -1

    @property
    def determinate(self) -> bool:
        return self.total_size >= 0
