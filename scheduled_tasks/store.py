"""
Task and history stores.

Both stores keep their collection as a single value in the storage backend
and rewrite it wholesale on every mutation. Each store serializes its own
read-modify-write cycles with a lock so concurrent callers inside the
process cannot lose each other's updates.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from scheduled_tasks.config import DB_KEYS, DEFAULT_CONFIG, ConfigStore
from scheduled_tasks.models import (
    HistoryEntry,
    Task,
    TaskValidationError,
    generate_id,
    now_ms,
)
from scheduled_tasks.storage import PersistenceError

logger = logging.getLogger(__name__)

# Fields managed by the store itself
_MANAGED_FIELDS = ('id', 'created_at', 'updated_at')

# Changing any of these re-validates the task
_VALIDATED_FIELDS = ('command', 'type', 'interval_value', 'daily_time', 'cron_expression')


class TaskStore:
    """
    CRUD over persisted task definitions.

    Order of ``list()`` is insertion order.
    """

    def __init__(self, storage, key: str = DB_KEYS['TASKS']):
        self.storage = storage
        self.key = key
        self._lock = threading.RLock()

    def _read(self) -> List[Dict[str, Any]]:
        try:
            data = self.storage.get(self.key)
        except PersistenceError as e:
            logger.error(f"Failed to get tasks: {e}")
            return []
        return data if isinstance(data, list) else []

    def _write(self, records: List[Dict[str, Any]]):
        self.storage.set(self.key, records)

    def _load(self) -> List[Task]:
        tasks = []
        for record in self._read():
            try:
                tasks.append(Task.from_dict(record))
            except (TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed task record: {e}")
        return tasks

    def list(self) -> List[Task]:
        """Get all tasks."""
        return self._load()

    def get(self, task_id: str) -> Optional[Task]:
        """Get a task by ID."""
        for task in self._load():
            if task.id == task_id:
                return task
        return None

    def create(self, **fields) -> Task:
        """
        Create and persist a new task.

        Args:
            **fields: Task fields (command, type, name, interval_value, ...)

        Returns:
            The stored task

        Raises:
            TaskValidationError: If the task definition is invalid
            PersistenceError: If the task list cannot be written
        """
        now = now_ms()
        data = {k: v for k, v in fields.items() if k not in _MANAGED_FIELDS}
        unknown = set(data) - set(Task.field_names())
        for name in unknown:
            logger.debug(f"Ignoring unknown task field: {name}")
            data.pop(name)
        data.setdefault('enabled', True)
        data.setdefault('command', "")

        task = Task.from_dict({**data, 'id': generate_id("task"), 'created_at': now, 'updated_at': now})
        errors = task.validate()
        if errors:
            raise TaskValidationError(errors)

        with self._lock:
            records = self._read()
            records.append(task.to_dict())
            self._write(records)

        logger.info(f"Added task: {task.id} ({task.type})")
        return task

    def update(self, task_id: str, **updates) -> Optional[Task]:
        """
        Merge updates over an existing task.

        Returns:
            The updated task, or None if no task has this ID

        Raises:
            TaskValidationError: If the merged definition is invalid
            PersistenceError: If the task list cannot be written
        """
        with self._lock:
            records = self._read()
            for index, record in enumerate(records):
                if record.get('id') != task_id:
                    continue

                merged = dict(record)
                for key, value in updates.items():
                    if key in _MANAGED_FIELDS:
                        continue
                    if key not in Task.field_names():
                        logger.debug(f"Ignoring unknown task field: {key}")
                        continue
                    merged[key] = value
                merged['id'] = task_id
                merged['updated_at'] = now_ms()

                task = Task.from_dict(merged)
                if any(key in _VALIDATED_FIELDS for key in updates):
                    errors = task.validate()
                    if errors:
                        raise TaskValidationError(errors)

                records[index] = task.to_dict()
                self._write(records)
                return task

        return None

    def delete(self, task_id: str) -> bool:
        """
        Remove a task by ID.

        Returns:
            True if a task was removed, False if not found
        """
        with self._lock:
            records = self._read()
            remaining = [r for r in records if r.get('id') != task_id]
            if len(remaining) == len(records):
                return False
            self._write(remaining)

        logger.info(f"Removed task: {task_id}")
        return True

    def __len__(self):
        return len(self._read())


class HistoryStore:
    """
    Newest-first, size-bounded execution log.

    The cap is read from the config store on every append, so lowering
    ``max_history_items`` takes effect on the next execution.
    """

    def __init__(self, storage, config_store: Optional[ConfigStore] = None,
                 key: str = DB_KEYS['HISTORY']):
        self.storage = storage
        self.config_store = config_store or ConfigStore(storage)
        self.key = key
        self._lock = threading.RLock()

    def _read(self) -> List[Dict[str, Any]]:
        try:
            data = self.storage.get(self.key)
        except PersistenceError as e:
            logger.error(f"Failed to get history: {e}")
            return []
        return data if isinstance(data, list) else []

    def _max_items(self) -> int:
        max_items = self.config_store.get().max_history_items
        if not max_items or max_items <= 0:
            return DEFAULT_CONFIG.max_history_items
        return max_items

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """
        Add an execution record at the head of the log.

        Returns:
            The stored entry, with its assigned ID

        Raises:
            PersistenceError: If the log cannot be written
        """
        stored = HistoryEntry.from_dict({**entry.to_dict(), 'id': generate_id("run")})
        max_items = self._max_items()

        with self._lock:
            history = self._read()
            history.insert(0, stored.to_dict())
            if len(history) > max_items:
                del history[max_items:]
            self.storage.set(self.key, history)

        return stored

    def list(
        self,
        task_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[HistoryEntry]:
        """
        Get execution history, newest first.

        Args:
            task_id: Filter by task ID
            status: Filter by status ('success', 'failure')
            limit: Maximum number of entries to return
        """
        entries = []
        for record in self._read():
            try:
                entries.append(HistoryEntry.from_dict(record))
            except TypeError as e:
                logger.warning(f"Skipping malformed history record: {e}")

        if task_id:
            entries = [e for e in entries if e.task_id == task_id]
        if status:
            entries = [e for e in entries if e.status == status]
        if limit:
            entries = entries[:limit]
        return entries

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        """Get a single history entry by ID."""
        for entry in self.list():
            if entry.id == entry_id:
                return entry
        return None

    def clear(self):
        """Empty the log."""
        with self._lock:
            self.storage.set(self.key, [])
        logger.info("Cleared execution history")
