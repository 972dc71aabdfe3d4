"""
Shared fixtures for the scheduled_tasks test suite.

Stores run against in-memory storage; the executor and delay calculator
are replaced with deterministic doubles so timer tests finish in
milliseconds without spawning processes.
"""

import threading

import pytest

from scheduled_tasks.config import ConfigStore
from scheduled_tasks.events import EventBus
from scheduled_tasks.models import ExecutionResult
from scheduled_tasks.service import Scheduler
from scheduled_tasks.storage import MemoryStorage
from scheduled_tasks.store import HistoryStore, TaskStore


class FakeExecutor:
    """
    Records commands instead of running them.

    Set ``block`` to hold every execution until ``release()`` is called.
    """

    def __init__(self, stdout="hi\n", exit_code=0, error=None, block=False):
        self.stdout = stdout
        self.exit_code = exit_code
        self.error = error
        self.calls = []
        self.started = threading.Event()
        self._released = threading.Event()
        if not block:
            self._released.set()

    def release(self):
        self._released.set()

    def execute(self, command):
        self.calls.append(command)
        self.started.set()
        self._released.wait(5)
        if self.error is not None:
            raise self.error
        return ExecutionResult(
            success=self.exit_code == 0,
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr="" if self.exit_code == 0 else "failed",
            duration=5,
            platform="linux",
        )


class FixedDelay:
    """Delay calculator that always answers ``delay_ms`` and records calls."""

    def __init__(self, delay_ms=20):
        self.delay_ms = delay_ms
        self.calls = []

    def __call__(self, task, now=None):
        self.calls.append(task.id)
        return self.delay_ms


@pytest.fixture()
def storage():
    return MemoryStorage()


@pytest.fixture()
def config_store(storage):
    return ConfigStore(storage)


@pytest.fixture()
def task_store(storage):
    return TaskStore(storage)


@pytest.fixture()
def history_store(storage, config_store):
    return HistoryStore(storage, config_store)


@pytest.fixture()
def executor():
    return FakeExecutor()


@pytest.fixture()
def events():
    return EventBus()


@pytest.fixture()
def delay():
    return FixedDelay(20)


@pytest.fixture()
def scheduler(storage, task_store, history_store, executor, events, delay):
    return Scheduler(
        task_store=task_store,
        history_store=history_store,
        executor=executor,
        events=events,
        calculator=delay,
        state_storage=storage,
    )
