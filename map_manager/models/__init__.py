"""
Data Models Layer.

This package contains Pydantic models and dataclasses that define the core data
structures used throughout the application, such as configuration, manifest
entries and download sessions.
"""

from .config import ManagerConfig
from .feature import CatalogEntry, Feature, FeatureRecord, ServerUrlManifest
from .session import (
    DownloadSession,
    DownloadType,
    FileRole,
    FileToDownload,
    RetentionSnapshot,
    UpdateRecord,
)

__all__ = [
    "CatalogEntry",
    "DownloadSession",
    "DownloadType",
    "Feature",
    "FeatureRecord",
    "FileRole",
    "FileToDownload",
    "ManagerConfig",
    "RetentionSnapshot",
    "ServerUrlManifest",
    "UpdateRecord",
]
