"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from qobuz_jobs.exceptions import ConfigurationError
from qobuz_jobs.models.config import Settings

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "qobuz-jobs" / "config.ini"

CREDENTIAL_KEYS = ("app_id", "app_secret", "token", "server_url")
# Settings that are stored per installation; server routing is per job
SETTINGS_KEYS = (
    "output_quality",
    "output_codec",
    "bitrate",
    "apply_metadata",
    "fix_md5",
    "album_art_size",
    "album_art_quality",
    "track_name",
    "folder_name",
    "zip_name",
    "server_side_downloads",
    "server_side_processing",
    "server_download_path",
)


def _to_ini(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "none"
    # configparser uses % for interpolation, so we must escape it
    return str(value).replace("%", "%%")


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path = DEFAULT_CONFIG_PATH):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser()
        self._loaded = False

    @property
    def exists(self) -> bool:
        return self.config_file_path.is_file()

    def _load(self) -> configparser.SectionProxy:
        if not self._loaded:
            if not self.exists:
                raise ConfigurationError(
                    f"Configuration file not found at '{self.config_file_path}'. "
                    "Please run 'qobuz-jobs init' first."
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
            self._loaded = True
        return self._parser["DEFAULT"]

    def load_credentials(self) -> dict[str, str]:
        """Returns app id, app secret, user token and the optional server URL."""
        section = self._load()
        credentials = {key: section.get(key, "").strip() for key in CREDENTIAL_KEYS}
        missing = [k for k in ("app_id", "app_secret", "token") if not credentials[k]]
        if missing:
            raise ConfigurationError(
                f"Missing credentials in configuration: {', '.join(missing)}. "
                "Please run 'qobuz-jobs init' again."
            )
        return credentials

    def server_downloads_enabled(self) -> bool:
        """The local stand-in for the operator flag when no server is configured."""
        return self._load().getboolean("server_downloads_enabled", False)

    def load_values(self) -> dict[str, str]:
        """Every stored key as written by the user, with ``%%`` escapes undone."""
        section = self._load()
        try:
            return dict(section)
        except configparser.InterpolationError as e:
            raise ConfigurationError(f"Error reading configuration file: {e}") from e

    def load_settings(self, cli_options: Optional[dict[str, Any]] = None) -> Settings:
        """
        Builds the job settings from the INI file with CLI overrides applied.

        Raises:
            ConfigurationError: If the file is missing or the values do not validate.
        """
        section = self._load()
        values: dict[str, Any] = {}
        for key in SETTINGS_KEYS:
            raw = section.get(key)
            if raw is None or raw == "":
                continue
            values[key] = raw
        if values.get("bitrate", "").lower() in ("none", "auto"):
            values["bitrate"] = None

        if cli_options:
            values.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            return Settings(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, values: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            values: Credentials and any settings to store; the rest get defaults.
        """
        config = configparser.ConfigParser()
        config["DEFAULT"] = {}
        defaults = Settings()

        for key in CREDENTIAL_KEYS:
            config["DEFAULT"][key] = _to_ini(values.get(key, ""))
        config["DEFAULT"]["server_downloads_enabled"] = _to_ini(
            values.get("server_downloads_enabled", False)
        )
        for key in SETTINGS_KEYS:
            config["DEFAULT"][key] = _to_ini(values.get(key, getattr(defaults, key)))

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e
        self._loaded = False

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = Settings()
        section = self._parser["DEFAULT"]
        needs_saving = False

        for key in SETTINGS_KEYS:
            if key not in section:
                section[key] = _to_ini(getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
