"""
Core scheduler service.

Keeps exactly one live timer per enabled task. Each timer is an asyncio
task that sleeps until the next fire, runs the command, then recomputes the
delay from the post-execution time and sleeps again. Schedules are always
rebuilt from the persisted task definitions on start/reload; the timer map
itself is never persisted.

The scheduler is generic and command-based - it simply executes shell
commands on a schedule without knowing what they do.
"""

import asyncio
import logging
import os
from collections import Counter
from typing import Callable, Dict, List, Optional, Set, Tuple

from scheduled_tasks.config import DB_KEYS
from scheduled_tasks.events import TASK_EXECUTED, EventBus
from scheduled_tasks.jobs import CommandExecutor
from scheduled_tasks.models import (
    STATUS_FAILURE,
    STATUS_SUCCESS,
    ExecutionResult,
    HistoryEntry,
    RuntimeState,
    Task,
    now_ms,
)
from scheduled_tasks.recurrence import RecurrenceError, compute_delay, local_now
from scheduled_tasks.storage import PersistenceError
from scheduled_tasks.store import HistoryStore, TaskStore

logger = logging.getLogger(__name__)

TASK_UNSCHEDULED = "unscheduled"
TASK_ARMED = "armed"
TASK_RUNNING = "running"


def get_runtime_state(storage) -> Optional[RuntimeState]:
    """
    Read the last scheduler lifecycle state written to storage.

    Returns:
        RuntimeState or None if nothing was recorded or it cannot be read
    """
    try:
        data = storage.get(DB_KEYS['BG_STATE'])
    except PersistenceError as e:
        logger.debug(f"Failed to read runtime state: {e}")
        return None
    if not isinstance(data, dict):
        return None
    return RuntimeState.from_dict(data)


class Scheduler:
    """
    Owns the live set of per-task timers.

    Collaborators are injected so the timing logic can be exercised with
    fake executors and calculators.
    """

    def __init__(
        self,
        task_store: TaskStore,
        history_store: HistoryStore,
        executor: CommandExecutor,
        events: Optional[EventBus] = None,
        calculator: Callable = compute_delay,
        clock: Callable = local_now,
        state_storage=None,
        background_mode: bool = False
    ):
        """
        Initialize scheduler.

        Args:
            task_store: Source of task definitions
            history_store: Sink for execution records
            executor: Runs commands (``execute(command) -> ExecutionResult``)
            events: Channel for ``taskExecuted`` notifications
            calculator: ``(task, now) -> delay_ms``, raises RecurrenceError
            clock: Returns the current aware datetime
            state_storage: Where to record runtime state (optional)
            background_mode: Recorded in the runtime state for status display
        """
        self.task_store = task_store
        self.history_store = history_store
        self.executor = executor
        self.events = events or EventBus()
        self.calculator = calculator
        self.clock = clock
        self.state_storage = state_storage
        self.background_mode = background_mode

        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[asyncio.Future] = set()
        self._scheduled_runs: Dict[str, asyncio.Future] = {}
        self._executing: Counter = Counter()
        self._running = False
        self._started_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._running

    # ---- lifecycle ----

    async def start(self):
        """Load all tasks and arm every enabled one. No-op if already running."""
        if self._running:
            logger.debug("Scheduler is already running")
            return

        self._running = True
        self._started_at = now_ms()
        logger.info("Starting scheduler...")

        for task in self.task_store.list():
            if not task.enabled:
                continue
            try:
                self.arm(task)
            except Exception:
                logger.exception(f"Failed to schedule task {task.id}, skipping")

        logger.info(f"Scheduler started, {len(self._timers)} task(s) scheduled")
        self._save_state()

    def stop(self):
        """
        Cancel every live timer.

        Commands that are already running are not interrupted.
        """
        logger.info("Stopping scheduler...")

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._running = False

        self._save_state()
        logger.info("Scheduler stopped")

    async def reload(self):
        """Rebuild all timers from the persisted task definitions."""
        self.stop()
        await self.start()

    async def wait_for_executions(self, timeout: Optional[float] = None):
        """Wait for executions started by timers to finish."""
        if self._in_flight:
            await asyncio.wait(set(self._in_flight), timeout=timeout)

    # ---- timers ----

    def arm(self, task: Task) -> bool:
        """
        Arm the timer for a task, replacing any existing one.

        Must be called from inside the running event loop.

        Returns:
            True if a timer is now live for the task
        """
        self._cancel(task.id)

        if not task.enabled:
            return False

        plan = self._plan(task)
        if plan is None:
            return False

        delay, next_execution_at = plan
        self._commit_next_execution(task, delay, next_execution_at)

        loop = asyncio.get_running_loop()
        self._timers[task.id] = loop.create_task(
            self._run_schedule(task, delay),
            name=f"scheduled-task:{task.id}"
        )
        return True

    def unschedule(self, task_id: str) -> bool:
        """
        Cancel and forget the live timer for a task.

        Returns:
            True if a timer was cancelled, False if none existed
        """
        if self._cancel(task_id):
            logger.info(f"Unscheduled task: {task_id}")
            return True
        return False

    def _cancel(self, task_id: str) -> bool:
        timer = self._timers.pop(task_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def is_armed(self, task_id: str) -> bool:
        timer = self._timers.get(task_id)
        return timer is not None and not timer.done()

    def armed_task_ids(self) -> List[str]:
        return [task_id for task_id in self._timers if self.is_armed(task_id)]

    def task_state(self, task_id: str) -> str:
        """Per-task state: 'running', 'armed' or 'unscheduled'."""
        if self._executing.get(task_id):
            return TASK_RUNNING
        if self.is_armed(task_id):
            return TASK_ARMED
        return TASK_UNSCHEDULED

    def _plan(self, task: Task) -> Optional[Tuple[int, int]]:
        """Compute (delay_ms, next_execution_at) or None if the rule is unusable."""
        now = self.clock()
        try:
            delay = self.calculator(task, now)
        except RecurrenceError as e:
            logger.error(f"Task {task.id} not scheduled: {e}")
            return None
        except Exception:
            logger.exception(f"Task {task.id} not scheduled: unexpected error computing next fire")
            return None
        return delay, int(now.timestamp() * 1000) + delay

    def _commit_next_execution(self, task: Task, delay: int, next_execution_at: int):
        try:
            self.task_store.update(task.id, next_execution_at=next_execution_at)
        except PersistenceError as e:
            logger.warning(f"Failed to record next execution for task {task.id}: {e}")
        logger.info(f"Task {task.id} next execution in {delay / 1000:.1f}s")

    async def _run_schedule(self, task: Task, delay: int):
        task_id = task.id
        try:
            previous = self._scheduled_runs.get(task_id)
            if previous is not None and not previous.done():
                # Re-armed mid-run: the next fire is planned from the end of that run
                logger.info(f"Task {task_id} is still running, rescheduling once it finishes")
                await asyncio.wait({previous})
                planned = await self._reschedule(task_id)
                if planned is None:
                    return
                task, delay = planned

            while True:
                await asyncio.sleep(delay / 1000)

                execution = asyncio.ensure_future(self.execute_now(task))
                self._in_flight.add(execution)
                execution.add_done_callback(self._in_flight.discard)
                self._scheduled_runs[task_id] = execution
                execution.add_done_callback(
                    lambda done, task_id=task_id: self._forget_run(task_id, done)
                )
                try:
                    # Shielded: cancelling the timer must not interrupt the command
                    await asyncio.shield(execution)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(f"Unexpected error while executing task {task_id}")

                planned = await self._reschedule(task_id)
                if planned is None:
                    break
                task, delay = planned
        finally:
            if self._timers.get(task_id) is asyncio.current_task():
                del self._timers[task_id]

    async def _reschedule(self, task_id: str) -> Optional[Tuple[Task, int]]:
        """Re-read a task after a run and plan its next fire, or None to stop."""
        task = await asyncio.to_thread(self.task_store.get, task_id)
        if task is None or not task.enabled:
            logger.info(f"Task {task_id} was removed or disabled, not rescheduling")
            return None

        plan = self._plan(task)
        if plan is None:
            return None
        delay, next_execution_at = plan
        await asyncio.to_thread(self._commit_next_execution, task, delay, next_execution_at)
        return task, delay

    def _forget_run(self, task_id: str, execution: asyncio.Future):
        if self._scheduled_runs.get(task_id) is execution:
            del self._scheduled_runs[task_id]

    # ---- execution ----

    async def execute_now(self, task: Task) -> Optional[ExecutionResult]:
        """
        Run a task's command immediately and record the outcome.

        Returns:
            The execution result, or None if the executor itself failed
        """
        logger.info(f"Executing task: {task.id}")
        started_at = now_ms()
        self._executing[task.id] += 1

        try:
            try:
                result = await asyncio.to_thread(self.executor.execute, task.command)
            except Exception as e:
                logger.exception(f"Task execution error: {task.id}")
                await asyncio.to_thread(self._record, HistoryEntry(
                    task_id=task.id,
                    task_name=task.name,
                    command=task.command,
                    executed_at=started_at,
                    status=STATUS_FAILURE,
                    exit_code=-1,
                    stdout="",
                    stderr=str(e),
                    duration=now_ms() - started_at,
                    output_truncated=False,
                ))
                return None

            await asyncio.to_thread(self._record, HistoryEntry(
                task_id=task.id,
                task_name=task.name,
                command=task.command,
                executed_at=started_at,
                status=STATUS_SUCCESS if result.success else STATUS_FAILURE,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                duration=result.duration,
                output_truncated=result.truncated,
            ))

            try:
                await asyncio.to_thread(self.task_store.update, task.id, last_executed_at=started_at)
            except PersistenceError as e:
                logger.error(f"Failed to record last execution for task {task.id}: {e}")

            self.events.emit(TASK_EXECUTED, {'task_id': task.id, 'result': result.to_dict()})

            logger.info(
                f"Task executed: {task.id}, status: {'success' if result.success else 'failure'}"
            )
            return result
        finally:
            self._executing[task.id] -= 1
            if self._executing[task.id] <= 0:
                del self._executing[task.id]

    def _record(self, entry: HistoryEntry):
        try:
            self.history_store.append(entry)
        except PersistenceError as e:
            logger.error(f"Failed to save history for task {entry.task_id}: {e}")

    # ---- runtime state ----

    def _save_state(self):
        if self.state_storage is None:
            return
        state = RuntimeState(
            running=self._running,
            started_at=self._started_at,
            stopped_at=None if self._running else now_ms(),
            task_count=len(self._timers),
            background_mode=self.background_mode,
            pid=os.getpid(),
        )
        try:
            self.state_storage.set(DB_KEYS['BG_STATE'], state.to_dict())
        except PersistenceError as e:
            logger.warning(f"Failed to save runtime state: {e}")

    def __repr__(self):
        return f"Scheduler(running={self._running}, armed={len(self._timers)})"
