"""
Asynchronous service facade.

Wires storage, stores, executor, event bus and scheduler together and
exposes the operations a UI or CLI drives. Task mutations made while the
scheduler is running are reflected in its timers immediately.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from scheduled_tasks.config import (
    Config,
    ConfigStore,
    apply_logging_config,
    get_data_dir,
)
from scheduled_tasks.events import TASK_EXECUTED, EventBus, Listener
from scheduled_tasks.jobs import CommandExecutor
from scheduled_tasks.models import ExecutionResult, HistoryEntry, Task
from scheduled_tasks.recurrence import schedule_diagnostics
from scheduled_tasks.service import Scheduler, get_runtime_state
from scheduled_tasks.storage import JsonFileStorage
from scheduled_tasks.store import HistoryStore, TaskStore

logger = logging.getLogger(__name__)

# Maintained by the scheduler, never by callers
_SCHEDULER_FIELDS = ('last_executed_at', 'next_execution_at')


class ScheduledTaskAPI:
    """
    Facade over the scheduling engine.

    Example:
        api = ScheduledTaskAPI()
        task = await api.create_task(name="ping", command="echo hi",
                                     type="interval", interval_value="1m")
        await api.start_scheduler()
    """

    def __init__(
        self,
        data_dir: Optional[str] = None,
        storage=None,
        executor: Optional[CommandExecutor] = None,
        scheduler_factory: Callable[..., Scheduler] = Scheduler,
        background_mode: bool = False
    ):
        """
        Initialize the API.

        Args:
            data_dir: Directory for the JSON state files (see get_data_dir)
            storage: Storage backend; overrides data_dir when given
            executor: Command executor (defaults to CommandExecutor)
            scheduler_factory: Builds the scheduler from the wired components
            background_mode: Recorded in the runtime state
        """
        if storage is None:
            storage = JsonFileStorage(get_data_dir(data_dir))
        self.storage = storage

        self.config_store = ConfigStore(storage)
        self.task_store = TaskStore(storage)
        self.history_store = HistoryStore(storage, self.config_store)
        self.executor = executor or CommandExecutor(self.config_store)
        self.events = EventBus()
        self.scheduler = scheduler_factory(
            task_store=self.task_store,
            history_store=self.history_store,
            executor=self.executor,
            events=self.events,
            state_storage=storage,
            background_mode=background_mode,
        )

        apply_logging_config(self.config_store.get())

    @property
    def data_dir(self) -> Optional[Path]:
        return getattr(self.storage, 'data_dir', None)

    # ---- tasks ----

    async def list_tasks(self) -> List[Task]:
        return self.task_store.list()

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self.task_store.get(task_id)

    async def create_task(self, **fields) -> Task:
        """
        Create a task and arm it if the scheduler is running.

        Raises:
            TaskValidationError: If the definition is invalid
            PersistenceError: If the task cannot be saved
        """
        task = self.task_store.create(**fields)
        self._report_diagnostics(task)
        if self.scheduler.running:
            self.scheduler.arm(task)
        return task

    async def update_task(self, task_id: str, **updates) -> Optional[Task]:
        """
        Update a task and re-arm it if the scheduler is running.

        Returns:
            The updated task, or None if no task has this ID

        Raises:
            TaskValidationError: If the merged definition is invalid
            PersistenceError: If the task cannot be saved
        """
        for name in _SCHEDULER_FIELDS:
            updates.pop(name, None)

        task = self.task_store.update(task_id, **updates)
        if task is None:
            return None

        self._report_diagnostics(task)
        if self.scheduler.running:
            if task.enabled:
                self.scheduler.arm(task)
            else:
                self.scheduler.unschedule(task_id)
        return task

    async def delete_task(self, task_id: str) -> bool:
        self.scheduler.unschedule(task_id)
        return self.task_store.delete(task_id)

    def _report_diagnostics(self, task: Task):
        for problem in schedule_diagnostics(task):
            logger.warning(f"Task {task.id}: {problem}")

    # ---- history ----

    async def list_history(
        self,
        task_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[HistoryEntry]:
        return self.history_store.list(task_id=task_id, status=status, limit=limit)

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        return self.history_store.get(entry_id)

    async def clear_history(self):
        self.history_store.clear()

    # ---- config ----

    async def get_config(self) -> Config:
        return self.config_store.get()

    async def update_config(self, **updates) -> Config:
        config = self.config_store.update(**updates)
        apply_logging_config(config)
        return config

    # ---- scheduler control ----

    async def start_scheduler(self):
        await self.scheduler.start()

    async def stop_scheduler(self):
        self.scheduler.stop()

    async def reload_scheduler(self):
        await self.scheduler.reload()

    async def execute_task_now(self, task: Task) -> Optional[ExecutionResult]:
        return await self.scheduler.execute_now(task)

    def get_status(self) -> Dict[str, Any]:
        """Scheduler status for display."""
        state = get_runtime_state(self.storage)
        return {
            'running': self.scheduler.running,
            'armed_tasks': self.scheduler.armed_task_ids(),
            'task_count': len(self.task_store),
            'data_dir': str(self.data_dir) if self.data_dir else None,
            'last_state': state.to_dict() if state else None,
        }

    # ---- events ----

    def add_listener(self, callback: Listener, event: str = TASK_EXECUTED) -> Callable[[], None]:
        """Subscribe to scheduler events; returns an unsubscribe function."""
        return self.events.add_listener(callback, event)

    async def close(self, wait: bool = True):
        """Stop the scheduler, optionally waiting for running commands."""
        if self.scheduler.running:
            self.scheduler.stop()
        if wait:
            await self.scheduler.wait_for_executions()
