"""
Scheduler configuration management.

Two layers of configuration:
- where data lives (data directory, resolved from arguments/environment)
- runtime options (history cap, output truncation, logging), persisted
  through the storage backend and merged over built-in defaults
"""

import logging
import os
import threading
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from scheduled_tasks.storage import PersistenceError

logger = logging.getLogger(__name__)

# Environment variable to override the data directory
ENV_DATA_DIR = "SCHEDULED_TASKS_DATA_DIR"
DEFAULT_DATA_DIR = Path.home() / ".scheduled_tasks"

# Logical persisted state keys
DB_KEYS = {
    'TASKS': 'scheduled_tasks_tasks',
    'HISTORY': 'scheduled_tasks_history',
    'CONFIG': 'scheduled_tasks_config',
    'BG_STATE': 'scheduled_tasks_bg_state',
}


def get_data_dir(data_dir: Optional[str] = None) -> Path:
    """
    Resolve the data directory.

    Priority:
    1. Explicitly passed data_dir
    2. SCHEDULED_TASKS_DATA_DIR environment variable
    3. Default (~/.scheduled_tasks)
    """
    if data_dir:
        return Path(data_dir).expanduser()
    env_dir = os.environ.get(ENV_DATA_DIR)
    if env_dir:
        return Path(env_dir).expanduser()
    return DEFAULT_DATA_DIR


def get_log_file(data_dir: Optional[str] = None) -> Path:
    """Get the scheduler log file path."""
    return get_data_dir(data_dir) / "logs" / "scheduler.log"


@dataclass
class Config:
    """Process-wide runtime options."""
    max_history_items: int = 500
    max_output_length: int = 10000  # characters per stream
    enable_logging: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = Config()


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw value (possibly a CLI string) to the type of the default."""
    default = getattr(DEFAULT_CONFIG, name)
    if isinstance(default, bool):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ('1', 'true', 'yes', 'on'):
                return True
            if lowered in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError(f"'{name}' expects a boolean, got '{value}'")
        return bool(value)
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"'{name}' expects an integer, got '{value}'") from e
    return value


def apply_logging_config(config: Config):
    """Silence package diagnostics below WARNING when ``enable_logging`` is off."""
    package_logger = logging.getLogger("scheduled_tasks")
    package_logger.setLevel(logging.NOTSET if config.enable_logging else logging.WARNING)


class ConfigStore:
    """
    Loads and persists the runtime Config.

    Persisted values are merged over DEFAULT_CONFIG; unknown keys are
    ignored. A failed read degrades to the defaults.
    """

    def __init__(self, storage, key: str = DB_KEYS['CONFIG']):
        self.storage = storage
        self.key = key
        self._lock = threading.RLock()

    def get(self) -> Config:
        """Load the configuration merged over defaults."""
        try:
            data = self.storage.get(self.key) or {}
        except PersistenceError as e:
            logger.error(f"Failed to load config, using defaults: {e}")
            return Config()

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed config value of type {type(data).__name__}")
            return Config()

        merged = DEFAULT_CONFIG.to_dict()
        for f in fields(Config):
            if f.name in data:
                try:
                    merged[f.name] = _coerce(f.name, data[f.name])
                except ValueError as e:
                    logger.warning(f"Ignoring persisted config value: {e}")
        return Config(**merged)

    def update(self, **updates) -> Config:
        """
        Merge updates over the current configuration and persist it.

        Returns:
            The new configuration

        Raises:
            ValueError: If a value cannot be coerced to the option's type
            PersistenceError: If the configuration cannot be written
        """
        known = {f.name for f in fields(Config)}
        with self._lock:
            current = self.get().to_dict()
            for key, value in updates.items():
                if key not in known:
                    logger.warning(f"Ignoring unknown config option: {key}")
                    continue
                current[key] = _coerce(key, value)

            config = Config(**current)
            self.storage.set(self.key, config.to_dict())

        logger.info(f"Saved configuration: {config}")
        return config
