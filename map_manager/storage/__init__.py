"""
Storage Layer.

This package handles all data persistence, including configuration files,
the installed-files catalog database, and the JSON manifests.
"""

from .catalog import CatalogStore
from .config_manager import ConfigManager
from .manifests import ManifestStore

__all__ = ["CatalogStore", "ConfigManager", "ManifestStore"]
