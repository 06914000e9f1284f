"""Global configuration for pymagicapi.

Connection settings are read from environment variables first and from
``~/.config/pymagicapi/config`` (``KEY=VALUE`` lines) second. A mirror root
carries its own settings in ``.magic-api-mirror.json`` which take precedence
over these defaults once a mirror is opened.
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_KEYS = (
    "MAGIC_API_URL",
    "MAGIC_API_USERNAME",
    "MAGIC_API_PASSWORD",
    "MAGIC_API_TOKEN",
)


class Config:
    """Reads and persists default connection settings."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding the ``config`` file. Defaults to
                ~/.config/pymagicapi
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "pymagicapi"
        self.config_dir = config_dir
        self.config_file = config_dir / "config"

    def _read_file(self) -> dict[str, str]:
        values: dict[str, str] = {}
        if not self.config_file.exists():
            return values
        try:
            for line in self.config_file.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, value = line.partition("=")
                values[key.strip()] = value.strip()
        except OSError as e:
            logger.warning(f"Failed to read config file {self.config_file}: {e}")
        return values

    def _get(self, key: str) -> Optional[str]:
        value = os.environ.get(key)
        if value:
            return value
        return self._read_file().get(key) or None

    @property
    def api_url(self) -> Optional[str]:
        """Base URL of the Magic API web console."""
        return self._get("MAGIC_API_URL")

    @property
    def username(self) -> Optional[str]:
        return self._get("MAGIC_API_USERNAME")

    @property
    def password(self) -> Optional[str]:
        return self._get("MAGIC_API_PASSWORD")

    @property
    def token(self) -> Optional[str]:
        """Static session token, used when no username/password is set."""
        return self._get("MAGIC_API_TOKEN")

    def save(self, **values: Optional[str]) -> Path:
        """Persist settings to the config file.

        Args:
            **values: Settings keyed by lower-case suffix, e.g. ``api_url``,
                ``username``. ``None`` values remove the key.

        Returns:
            Path of the written config file
        """
        current = self._read_file()
        for name, value in values.items():
            key = "MAGIC_API_URL" if name == "api_url" else f"MAGIC_API_{name.upper()}"
            if key not in CONFIG_KEYS:
                raise ValueError(f"Unknown config setting: {name}")
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value

        self.config_dir.mkdir(parents=True, exist_ok=True)
        lines = [f"{key}={current[key]}" for key in CONFIG_KEYS if key in current]
        self.config_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        # The file may hold a password
        self.config_file.chmod(0o600)
        logger.debug(f"Saved configuration to {self.config_file}")
        return self.config_file


config = Config()
