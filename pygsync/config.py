"""Configuration management for PyGSync.

Values are read from ``~/.config/pygsync/config.json`` and can be overridden
with environment variables (``PYGSYNC_CLIENT_ID`` etc.).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_KEYS = (
    "client_id",
    "client_secret",
    "refresh_token",
    "input_files",
    "root_folder",
    "drive_id",
)

REQUIRED_KEYS = ("client_id", "client_secret", "refresh_token", "input_files")

SECRET_KEYS = ("client_secret", "refresh_token")

DEFAULT_ROOT_FOLDER = "root"


class Config:
    """Persisted configuration with environment overrides."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding config.json. Defaults to
                ``$PYGSYNC_CONFIG_DIR`` or ~/.config/pygsync
        """
        if config_dir is None:
            env_dir = os.environ.get("PYGSYNC_CONFIG_DIR")
            config_dir = Path(env_dir) if env_dir else Path.home() / ".config" / "pygsync"
        self.config_dir = config_dir

    def get_config_path(self) -> Path:
        return self.config_dir / "config.json"

    def get_state_dir(self) -> Path:
        return self.config_dir / "state"

    def load_file(self) -> dict[str, Any]:
        """Load stored values (without environment overrides).

        Raises:
            ConfigError: If the file exists but is not valid JSON
        """
        config_path = self.get_config_path()
        if not config_path.exists():
            return {}
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid configuration file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid configuration file {config_path}")
        return {key: data[key] for key in CONFIG_KEYS if data.get(key)}

    def get(self, key: str) -> Optional[str]:
        """Return a configuration value, preferring the environment."""
        env_value = os.environ.get(f"PYGSYNC_{key.upper()}")
        if env_value:
            return env_value
        return self.load_file().get(key)

    def as_dict(self) -> dict[str, Optional[str]]:
        """Return all effective values."""
        stored = self.load_file()
        result: dict[str, Optional[str]] = {}
        for key in CONFIG_KEYS:
            result[key] = os.environ.get(f"PYGSYNC_{key.upper()}") or stored.get(key)
        return result

    def save(self, **values: Optional[str]) -> dict[str, Any]:
        """Merge new values over the stored configuration and write it.

        Empty or None values leave the stored value untouched.

        Returns:
            The merged configuration that was written

        Raises:
            ConfigError: For unknown keys
        """
        unknown = set(values) - set(CONFIG_KEYS)
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")

        merged = self.load_file()
        for key, value in values.items():
            if value:
                merged[key] = value

        self.config_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.get_config_path()
        tmp_path = config_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(merged, f, indent=2)
        os.replace(tmp_path, config_path)
        try:
            os.chmod(config_path, 0o600)
        except OSError:
            logger.debug(f"Could not restrict permissions of {config_path}")
        logger.debug(f"Saved configuration to {config_path}")
        return merged

    def is_complete(self, values: Optional[dict[str, Any]] = None) -> tuple[bool, str]:
        """Check that all required values are present.

        Returns:
            Tuple of (complete, reason); reason names the first missing key
        """
        values = values if values is not None else self.as_dict()
        for key in REQUIRED_KEYS:
            if not values.get(key):
                return False, f"'{key}' is empty"
        return True, ""

    def is_configured(self) -> bool:
        return self.is_complete()[0]

    @property
    def client_id(self) -> Optional[str]:
        return self.get("client_id")

    @property
    def client_secret(self) -> Optional[str]:
        return self.get("client_secret")

    @property
    def refresh_token(self) -> Optional[str]:
        return self.get("refresh_token")

    @property
    def root_folder(self) -> str:
        return self.get("root_folder") or DEFAULT_ROOT_FOLDER

    @property
    def drive_id(self) -> Optional[str]:
        return self.get("drive_id")

    def get_input_paths(self, input_files: Optional[str] = None) -> list[Path]:
        """Split a comma separated list of inputs into absolute paths.

        Args:
            input_files: Comma separated paths (defaults to the configured value)

        Returns:
            List of absolute paths, relative entries resolved against the
            current working directory
        """
        raw = input_files if input_files is not None else self.get("input_files")
        if not raw:
            return []
        paths = []
        for part in raw.split(","):
            part = part.strip()
            if part:
                paths.append(Path(part).expanduser().absolute())
        return paths


config = Config()
