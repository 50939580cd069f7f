from pathlib import Path

import pytest

from map_manager.exceptions import ConfigurationError
from map_manager.storage.config_manager import ConfigManager


def test_saved_config_loads_back(tmp_path: Path) -> None:
    config_file = tmp_path / "config" / "config.ini"
    manager = ConfigManager(config_file)
    manager.save_new_config(
        {
            "storage_root": tmp_path / "maps",
            "server_url": "https://maps.example.org/url.json",
            "required_versions": {"postal": "3", "territory": "v10"},
        }
    )

    config = ConfigManager(config_file).load_config()

    assert config.storage_root == tmp_path / "maps"
    assert config.server_url == "https://maps.example.org/url.json"
    assert config.max_attempts == 3
    assert config.required_versions == {"postal": "3", "territory": "v10"}
    assert config.progress_step == 1024 * 1024
    assert config.config_path == str(config_file.parent)


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="init"):
        ConfigManager(tmp_path / "config.ini").load_config()


def test_invalid_number_is_a_configuration_error(tmp_path: Path) -> None:
    config_file = tmp_path / "config.ini"
    config_file.write_text("[DEFAULT]\nstorage_root = /maps\nmax_attempts = many\n")
    with pytest.raises(ConfigurationError):
        ConfigManager(config_file).load_config()


def test_validation_failure(tmp_path: Path) -> None:
    config_file = tmp_path / "config.ini"
    config_file.write_text("[DEFAULT]\nstorage_root = /maps\nserver_url = ftp://x\n")
    with pytest.raises(ConfigurationError, match="validation"):
        ConfigManager(config_file).load_config()


def test_missing_defaults_are_migrated(tmp_path: Path) -> None:
    config_file = tmp_path / "config.ini"
    config_file.write_text("[DEFAULT]\nstorage_root = /maps\n")

    config = ConfigManager(config_file).load_config()

    assert config.retry_delay == 1.5
    text = config_file.read_text()
    assert "max_attempts = 3" in text
    assert "[versions]" in text


def test_cli_options_override_file(tmp_path: Path) -> None:
    config_file = tmp_path / "config.ini"
    config_file.write_text("[DEFAULT]\nstorage_root = /maps\nmax_attempts = 2\n")

    config = ConfigManager(config_file).load_config({"max_attempts": 5})

    assert config.max_attempts == 5
