"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from map_manager.exceptions import ConfigurationError
from map_manager.models.config import ManagerConfig

log = logging.getLogger(__name__)

VERSIONS_SECTION = "versions"

DEFAULT_SETTINGS: dict[str, Any] = {
    "server_url": "",
    "max_attempts": 3,
    "retry_delay": 1.5,
    "progress_step_kb": 1024,
}


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> ManagerConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated ManagerConfig object.

        Raises:
            ConfigurationError: If the config file is missing, invalid, or validation
            fails.
        """
        if not self.config_file_path.is_file():
            raise ConfigurationError(
                f"Configuration file not found at '{self.config_file_path}'. "
                "Please run 'map-manager init' first."
            )

        try:
            self._parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e

        if self._migrate_if_needed():
            log.info(
                "[yellow]Configuration file was updated with new default values."
                "[/yellow]"
            )

        try:
            config_from_file = self._get_config_as_dict()
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e

        # Override with CLI options
        if cli_options:
            config_from_file.update(cli_options)

        try:
            config_dir = self.config_file_path.parent
            return ManagerConfig(**config_from_file, config_path=str(config_dir))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: A dictionary of settings to save. `required_versions` is
            written to its own section.
        """
        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}

        for key in sorted(ManagerConfig.get_ini_keys()):
            value = settings.get(key, DEFAULT_SETTINGS.get(key))
            if value is not None:
                config["DEFAULT"][key] = str(value)

        config[VERSIONS_SECTION] = {
            feature_type: str(version)
            for feature_type, version in settings.get("required_versions", {}).items()
        }

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' and 'versions' INI sections into a dictionary."""
        section = self._parser["DEFAULT"]
        required_versions: dict[str, str] = {}
        if self._parser.has_section(VERSIONS_SECTION):
            required_versions = {
                key: value
                for key, value in self._parser.items(VERSIONS_SECTION)
                if key not in section
            }
        return {
            "storage_root": section.get("storage_root", ""),
            "server_url": section.get("server_url", ""),
            "max_attempts": section.getint("max_attempts", 3),
            "retry_delay": section.getfloat("retry_delay", 1.5),
            "progress_step_kb": section.getint("progress_step_kb", 1024),
            "required_versions": required_versions,
        }

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        needs_saving = False
        config_section = self._parser["DEFAULT"]

        for key, default_value in DEFAULT_SETTINGS.items():
            if key not in config_section:
                config_section[key] = str(default_value)
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if not self._parser.has_section(VERSIONS_SECTION):
            self._parser.add_section(VERSIONS_SECTION)
            needs_saving = True

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
