"""Configuration management for AIGENDA sync.

Settings live in ``config.yaml`` inside the config directory
(``$AIGENDA_HOME`` or ``~/.aigenda``). Environment variables override the
file for the API URL and auth token.
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

ENV_HOME = "AIGENDA_HOME"
ENV_API_URL = "AIGENDA_API_URL"
ENV_AUTH_TOKEN = "AIGENDA_AUTH_TOKEN"

# setting name -> environment variable overriding it
ENV_OVERRIDES = {
    'api_url': ENV_API_URL,
    'auth_token': ENV_AUTH_TOKEN,
}


class SyncSettings(BaseModel):
    """Settings for the sync engine and its REST transport."""

    api_url: str = "http://localhost:5000"
    sync_path: str = "/api/sync"
    auth_token: Optional[str] = None

    sync_interval_seconds: float = 60
    request_timeout_seconds: float = 30
    retention_seconds: int = 3600  # synced entries are kept this long

    local_id_prefix: str = "local_"
    terminal_error_codes: List[str] = Field(
        default_factory=lambda: ["INVALID_DATA", "PERMISSION_DENIED"]
    )

    data_dir: str = "~/.aigenda"
    log_level: str = "WARNING"

    @field_validator('sync_interval_seconds')
    @classmethod
    def validate_sync_interval(cls, v):
        if v < 1:
            raise ValueError('Sync interval must be at least 1 second')
        return v

    @field_validator('request_timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError('Request timeout must be positive')
        return v

    @field_validator('retention_seconds')
    @classmethod
    def validate_retention(cls, v):
        if v < 0:
            raise ValueError('Retention must not be negative')
        return v

    @field_validator('local_id_prefix')
    @classmethod
    def validate_prefix(cls, v):
        if not v:
            raise ValueError('Local id prefix must not be empty')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Unknown log level: {v}')
        return level

    @property
    def data_path(self) -> Path:
        return Path(os.path.expanduser(self.data_dir))


def get_config_dir() -> Path:
    """Get the configuration directory path.

    Returns:
        Path to the configuration directory
    """
    return Path(os.environ.get(ENV_HOME) or os.path.expanduser("~/.aigenda"))


class ConfigManager:
    """Loads and saves ``SyncSettings`` with file-based persistence."""

    CONFIG_FILE = "config.yaml"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize config manager.

        Args:
            config_dir: Optional config directory path
        """
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.config_file = self.config_dir / self.CONFIG_FILE
        self.settings = SyncSettings(data_dir=str(self.config_dir))
        self._file_data: Dict[str, Any] = {}
        self._env_keys: Set[str] = set()
        self.logger = logging.getLogger(__name__)

        self.load()

    def load(self) -> SyncSettings:
        """Load configuration from file, then apply environment overrides."""
        data: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    loaded = yaml.safe_load(f) or {}
                if not isinstance(loaded, dict):
                    raise ValueError("config root must be a mapping")
                data = {k: v for k, v in loaded.items() if not k.startswith('_')}
            except (OSError, ValueError, yaml.YAMLError) as e:
                self.logger.warning(f"Failed to read {self.config_file}, using defaults: {e}")
                data = {}
        else:
            self.logger.debug("No config file found, using defaults")

        data.setdefault('data_dir', str(self.config_dir))
        self._file_data = dict(data)
        self._env_keys = set()
        for key, env_var in ENV_OVERRIDES.items():
            if os.environ.get(env_var):
                data[key] = os.environ[env_var]
                self._env_keys.add(key)

        try:
            self.settings = SyncSettings(**data)
        except ValidationError as e:
            self.logger.warning(f"Invalid settings in {self.config_file}, using defaults: {e}")
            self.settings = SyncSettings(data_dir=str(self.config_dir))
            self._file_data = {}
            self._env_keys = set()
        return self.settings

    def save(self):
        """Save configuration to file.

        Values supplied by environment variables are not written; the
        file keeps whatever it held for those keys.
        """
        data = self.settings.model_dump()
        for key in self._env_keys:
            if key in self._file_data:
                data[key] = self._file_data[key]
            else:
                data.pop(key, None)
        data['_metadata'] = {
            'version': '1.0',
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }

        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        # Write with atomic operation
        temp_file = self.config_file.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=True)
        temp_file.replace(self.config_file)

        self.logger.debug(f"Saved config to {self.config_file}")

    def update_setting(self, key: str, value: Any) -> SyncSettings:
        """Update a single setting and persist it.

        Args:
            key: Setting name
            value: New value; strings are coerced by validation

        Raises:
            KeyError: If the setting does not exist
            ValueError: If the value fails validation
        """
        if key not in SyncSettings.model_fields:
            raise KeyError(f"Unknown setting: {key}")
        data = self.settings.model_dump()
        data[key] = value
        try:
            self.settings = SyncSettings(**data)
        except ValidationError as e:
            raise ValueError(str(e)) from e
        self._env_keys.discard(key)
        self._file_data[key] = getattr(self.settings, key)
        self.save()
        return self.settings


def get_settings(config_dir: Optional[Path] = None) -> SyncSettings:
    """Get the current settings."""
    return ConfigManager(config_dir).settings
