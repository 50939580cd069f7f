import json
from pathlib import Path

import pytest

from map_manager.exceptions import ManifestParseError
from map_manager.storage.manifests import PROVIDED_FILE, ManifestStore


def test_missing_manifest_is_empty(tmp_path: Path) -> None:
    assert ManifestStore(tmp_path).load(PROVIDED_FILE) == {}


def test_save_and_load(tmp_path: Path) -> None:
    store = ManifestStore(tmp_path)
    store.save(PROVIDED_FILE, {"EE": {"type": "territory"}})

    assert store.load(PROVIDED_FILE) == {"EE": {"type": "territory"}}
    assert not list(tmp_path.glob("*.tmp"))


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_load_rejects_malformed_manifest(tmp_path: Path, content: str) -> None:
    (tmp_path / PROVIDED_FILE).write_text(content, encoding="utf-8")
    with pytest.raises(ManifestParseError):
        ManifestStore(tmp_path).load(PROVIDED_FILE)


def test_install_replaces_manifest(tmp_path: Path) -> None:
    store = ManifestStore(tmp_path)
    downloaded = tmp_path / "download.json"
    downloaded.write_text(json.dumps({"FI": {}}), encoding="utf-8")

    assert store.install(PROVIDED_FILE, downloaded) == {"FI": {}}
    assert store.load(PROVIDED_FILE) == {"FI": {}}
    assert not downloaded.exists()


def test_failed_install_keeps_previous_manifest(tmp_path: Path) -> None:
    store = ManifestStore(tmp_path)
    store.save(PROVIDED_FILE, {"EE": {}})
    downloaded = tmp_path / "download.json"
    downloaded.write_text("<html>502 Bad Gateway</html>", encoding="utf-8")

    with pytest.raises(ManifestParseError):
        store.install(PROVIDED_FILE, downloaded)

    assert store.load(PROVIDED_FILE) == {"EE": {}}
    assert not downloaded.exists()


def test_install_runs_validator(tmp_path: Path) -> None:
    store = ManifestStore(tmp_path)
    downloaded = tmp_path / "download.json"
    downloaded.write_text("{}", encoding="utf-8")

    def reject(data):
        raise ManifestParseError("missing providedListUrl")

    with pytest.raises(ManifestParseError, match="providedListUrl"):
        store.install("url.json", downloaded, reject)
    assert not (tmp_path / "url.json").exists()
