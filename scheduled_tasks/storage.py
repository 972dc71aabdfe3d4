"""
Key-value persistence backends.

The stores on top of this module treat persistence as a plain get/set API:
each key holds one self-contained JSON-serializable collection, and a single
``set`` is atomic for that key. There are no transactions across keys.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a value cannot be read from or written to storage."""
    pass


class JsonFileStorage:
    """
    Stores each key as ``<data_dir>/<key>.json``.

    Writes go to a temporary file in the same directory which is then
    renamed over the target, so readers never see a half-written value.
    """

    def __init__(self, data_dir: Path):
        """
        Initialize file storage.

        Args:
            data_dir: Directory holding one JSON file per key
        """
        self.data_dir = Path(data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def get(self, key: str) -> Optional[Any]:
        """
        Read the value stored under ``key``.

        Returns:
            The decoded value, or None if the key has never been written

        Raises:
            PersistenceError: If the file exists but cannot be read or decoded
        """
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read '{key}' from {path}: {e}") from e

    def set(self, key: str, value: Any) -> None:
        """
        Replace the value stored under ``key``.

        Raises:
            PersistenceError: If the value cannot be encoded or written
        """
        path = self._path_for(key)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(self.data_dir))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(value, f, indent=2, ensure_ascii=False)
                os.replace(tmp_name, path)
            except (OSError, TypeError, ValueError) as e:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise PersistenceError(f"Failed to write '{key}' to {path}: {e}") from e

    def __repr__(self):
        return f"JsonFileStorage(data_dir={self.data_dir})"


class MemoryStorage:
    """
    In-process storage.

    Values are deep-copied on the way in and out so callers cannot mutate
    stored state by holding on to a returned object.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def keys(self):
        with self._lock:
            return list(self._data.keys())

    def __repr__(self):
        return f"MemoryStorage(keys={len(self._data)})"
