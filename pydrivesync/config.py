"""Configuration for pydrivesync.

A single :class:`Config` value is built once at startup (normally by the
CLI) and handed to the API client and the sync engine. Values are resolved
from explicit arguments, then environment variables, then the ``config``
file inside the configuration directory, then defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .utils import DEFAULT_CACHE_FILE_NAME

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://www.googleapis.com/drive/v3"
DEFAULT_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
CONFIG_FILE_NAME = "config"
STATE_DIR_NAME = "sync_state"

ENV_ACCESS_TOKEN = "DRIVE_ACCESS_TOKEN"
ENV_API_URL = "DRIVE_API_URL"
ENV_UPLOAD_URL = "DRIVE_UPLOAD_URL"
ENV_CONFIG_DIR = "DRIVE_CONFIG_DIR"


def default_config_dir() -> Path:
    """Return the default configuration directory (~/.config/pydrivesync)."""
    return Path.home() / ".config" / "pydrivesync"


def _read_config_file(path: Path) -> dict[str, str]:
    """Parse a ``KEY=value`` config file, ignoring blanks and comments."""
    values: dict[str, str] = {}
    if not path.exists():
        return values

    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                values[key.strip()] = value.strip().strip('"').strip("'")
    except OSError as e:
        logger.warning(f"Could not read config file {path}: {e}")

    return values


@dataclass
class Config:
    """Resolved configuration for one process."""

    config_dir: Path = field(default_factory=default_config_dir)
    """Directory holding the config file, checksum cache and sync state"""

    access_token: Optional[str] = None
    """Bearer token used for every API request"""

    api_url: str = DEFAULT_API_URL
    """Base URL of the metadata API"""

    upload_url: str = DEFAULT_UPLOAD_URL
    """Base URL of the upload API"""

    @classmethod
    def load(
        cls,
        config_dir: Optional[Path] = None,
        access_token: Optional[str] = None,
    ) -> "Config":
        """Build the configuration from arguments, environment and file.

        Args:
            config_dir: Explicit configuration directory
            access_token: Explicit access token (e.g. from --access-token)

        Returns:
            Config instance
        """
        if config_dir is None:
            env_dir = os.environ.get(ENV_CONFIG_DIR)
            config_dir = Path(env_dir) if env_dir else default_config_dir()
        config_dir = Path(config_dir).expanduser()

        file_values = _read_config_file(config_dir / CONFIG_FILE_NAME)

        def resolve(env_name: str, default: Optional[str]) -> Optional[str]:
            return os.environ.get(env_name) or file_values.get(env_name) or default

        return cls(
            config_dir=config_dir,
            access_token=access_token or resolve(ENV_ACCESS_TOKEN, None),
            api_url=resolve(ENV_API_URL, DEFAULT_API_URL) or DEFAULT_API_URL,
            upload_url=resolve(ENV_UPLOAD_URL, DEFAULT_UPLOAD_URL)
            or DEFAULT_UPLOAD_URL,
        )

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def cache_path(self) -> Path:
        """Location of the persisted checksum cache."""
        return self.config_dir / DEFAULT_CACHE_FILE_NAME

    @property
    def state_dir(self) -> Path:
        """Directory holding per sync pair state files."""
        return self.config_dir / STATE_DIR_NAME

    def is_configured(self) -> bool:
        return bool(self.access_token)

    def save_access_token(self, access_token: str) -> Path:
        """Store the access token in the config file.

        Other keys already present in the file are preserved.

        Args:
            access_token: Token to store

        Returns:
            Path of the written config file
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)
        values = _read_config_file(self.config_file)
        values[ENV_ACCESS_TOKEN] = access_token

        with open(self.config_file, "w", encoding="utf-8") as f:
            for key, value in values.items():
                f.write(f"{key}={value}\n")
        os.chmod(self.config_file, 0o600)

        self.access_token = access_token
        return self.config_file
