"""Configuration management for stackbackup."""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from .errors import ConfigInvalid


DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into ``base`` recursively and return ``base``."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class Config:
    """Configuration manager for stackbackup."""

    # Environment variable -> (dotted key, type)
    ENV_MAPPINGS = {
        'STACKBACKUP_DESTINATION': ('backup.destination', str),
        'STACKBACKUP_RETENTION_COUNT': ('backup.retention.count', int),
        'STACKBACKUP_TIMEOUT': ('backup.timeout_seconds', int),
        'STACKBACKUP_RUNTIME': ('runtime.command', str),
        'STACKBACKUP_DB_CONTAINER': ('database.container', str),
        'STACKBACKUP_DB_NAME': ('database.name', str),
        'STACKBACKUP_DB_USER': ('database.user', str),
        'STACKBACKUP_VOLUME': ('volume.name', str),
        'STACKBACKUP_CONFIG_FILE': ('config_file.path', str),
        'STACKBACKUP_LOG_LEVEL': ('notifications.level', str),
    }

    def __init__(self, config_path: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        """Initialize configuration.

        Args:
            config_path: Path to custom configuration file
            environ: Environment mapping used for overrides (defaults to os.environ)
        """
        self.config_path = config_path
        self.environ = os.environ if environ is None else environ
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load defaults, then the custom file, then environment overrides."""
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            config = yaml.safe_load(f)

        if self.config_path:
            if not os.path.exists(self.config_path):
                raise ConfigInvalid('config', f"file not found: {self.config_path}")
            with open(self.config_path, 'r') as f:
                custom_config = yaml.safe_load(f) or {}
            if not isinstance(custom_config, dict):
                raise ConfigInvalid('config', "top level of the configuration file must be a mapping")
            _deep_merge(config, custom_config)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        for env_var, (key, cast) in self.ENV_MAPPINGS.items():
            if env_var not in self.environ:
                continue
            raw = self.environ[env_var]
            try:
                value = cast(raw)
            except ValueError:
                raise ConfigInvalid(key, f"{env_var}={raw!r} is not a valid {cast.__name__}")

            current = config
            parts = key.split('.')
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = value

        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., 'backup.destination')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation."""
        keys = key.split('.')
        current = self._config
        for k in keys[:-1]:
            current = current.setdefault(k, {})
        current[keys[-1]] = value

    def save(self, path: str) -> None:
        """Save current configuration to a YAML file."""
        with open(path, 'w') as f:
            yaml.safe_dump(self._config, f, default_flow_style=False, indent=2)

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def validate(self) -> None:
        """Check required settings before any I/O happens.

        Raises:
            ConfigInvalid: On the first missing or malformed field
        """
        if not self.get('backup.destination'):
            raise ConfigInvalid('backup.destination', "must be set")

        count = self.get('backup.retention.count')
        if isinstance(count, bool) or not isinstance(count, int):
            raise ConfigInvalid('backup.retention.count', f"must be an integer, got {count!r}")
        if count < 0:
            raise ConfigInvalid('backup.retention.count', f"must be >= 0, got {count}")

        timeout = self.get('backup.timeout_seconds')
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise ConfigInvalid('backup.timeout_seconds', f"must be a positive number, got {timeout!r}")

        if not self.get('runtime.command'):
            raise ConfigInvalid('runtime.command', "must be set")

        if self.database_enabled:
            for field in ('database.container', 'database.name', 'database.user'):
                if not self.get(field):
                    raise ConfigInvalid(field, "must be set when database capture is enabled")

        if self.volume_enabled:
            for field in ('volume.name', 'volume.helper_image'):
                if not self.get(field):
                    raise ConfigInvalid(field, "must be set when volume capture is enabled")

        level = str(self.get('notifications.level', 'INFO')).upper()
        if level not in LOG_LEVELS:
            raise ConfigInvalid('notifications.level', f"unknown log level {level!r}")

    @property
    def backup_destination(self) -> Path:
        """Backup directory with ``~`` expanded."""
        return Path(str(self.get('backup.destination'))).expanduser()

    @property
    def retention_count(self) -> int:
        return self.get('backup.retention.count', 7)

    @property
    def timeout_seconds(self) -> Optional[float]:
        return self.get('backup.timeout_seconds')

    @property
    def runtime_command(self) -> str:
        return self.get('runtime.command', 'docker')

    @property
    def database_enabled(self) -> bool:
        return bool(self.get('database.enabled', True))

    @property
    def volume_enabled(self) -> bool:
        return bool(self.get('volume.enabled', True))

    @property
    def config_file_path(self) -> Optional[Path]:
        """Path of the configuration file to snapshot, or None when not configured."""
        path = self.get('config_file.path')
        if not path:
            return None
        return Path(str(path)).expanduser()
