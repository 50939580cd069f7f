"""
Reads and writes the JSON manifests kept in the storage root: the server URL
descriptor, the provided list and the requested (subscription) list.
"""

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from map_manager.exceptions import ManifestParseError

log = logging.getLogger(__name__)

SERVER_URL_FILE = "url.json"
PROVIDED_FILE = "countries_provided.json"
REQUESTED_FILE = "countries_requested.json"

MANIFEST_FILES = (SERVER_URL_FILE, PROVIDED_FILE, REQUESTED_FILE)


def parse_manifest(text: str, source: str) -> dict[str, Any]:
    """
    Parses manifest text into a JSON object.

    Raises:
        ManifestParseError: If the text is not valid JSON or not a JSON object.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ManifestParseError(f"Malformed JSON in '{source}': {e}") from e
    if not isinstance(data, dict):
        raise ManifestParseError(
            f"Manifest '{source}' must contain a JSON object, "
            f"got {type(data).__name__}."
        )
    return data


class ManifestStore:
    """File-based storage of the manager's JSON manifests."""

    def __init__(self, storage_root: Path):
        self.root = storage_root

    def path(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def load(self, name: str) -> dict[str, Any]:
        """
        Loads a manifest. A missing file yields an empty object.

        Raises:
            ManifestParseError: If the file cannot be read or parsed.
        """
        manifest_path = self.path(name)
        if not manifest_path.is_file():
            return {}
        try:
            text = manifest_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestParseError(f"Could not read '{name}': {e}") from e
        return parse_manifest(text, name)

    def save(self, name: str, data: dict[str, Any]) -> None:
        """Writes a manifest atomically via a temporary file."""
        manifest_path = self.path(name)
        tmp_path = manifest_path.with_name(f".{manifest_path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, manifest_path)
        log.debug(f"Saved manifest '{name}' ({len(data)} entries).")

    def install(
        self,
        name: str,
        downloaded: Path,
        validator: Callable[[dict[str, Any]], Any] | None = None,
    ) -> dict[str, Any]:
        """
        Validates a freshly downloaded manifest and moves it into place.
        The previous manifest is kept when validation fails.

        Args:
            name: Manifest file name inside the storage root.
            downloaded: Path of the downloaded file.
            validator: Optional schema check raising ManifestParseError.
        """
        try:
            text = downloaded.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestParseError(f"Could not read downloaded '{name}': {e}") from e
        try:
            data = parse_manifest(text, name)
            if validator:
                validator(data)
        except ManifestParseError:
            downloaded.unlink(missing_ok=True)
            raise
        os.replace(downloaded, self.path(name))
        return data
