"""
Tests for the per-task timer loops in scheduled_tasks.service.
"""

import asyncio
import threading

import pytest

from conftest import FakeExecutor, FixedDelay
from scheduled_tasks.config import DB_KEYS
from scheduled_tasks.events import TASK_EXECUTED
from scheduled_tasks.recurrence import compute_delay
from scheduled_tasks.service import (
    TASK_ARMED,
    TASK_RUNNING,
    TASK_UNSCHEDULED,
    Scheduler,
)


async def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is truthy or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_start_arms_only_enabled_tasks(scheduler, task_store):
    enabled = task_store.create(command="echo a", interval_value="1m")
    disabled = task_store.create(command="echo b", interval_value="1m", enabled=False)
    scheduler.calculator = FixedDelay(60_000)

    await scheduler.start()

    assert scheduler.running
    assert scheduler.armed_task_ids() == [enabled.id]
    assert task_store.get(enabled.id).next_execution_at is not None
    assert task_store.get(disabled.id).next_execution_at is None

    scheduler.stop()


@pytest.mark.asyncio
async def test_start_is_idempotent(scheduler, task_store):
    task_store.create(command="echo a", interval_value="1m")
    scheduler.calculator = delay = FixedDelay(60_000)

    await scheduler.start()
    await scheduler.start()

    assert len(scheduler.armed_task_ids()) == 1
    assert len(delay.calls) == 1

    scheduler.stop()


@pytest.mark.asyncio
async def test_rearming_replaces_the_existing_timer(scheduler, task_store):
    task = task_store.create(command="echo a", interval_value="1m")
    scheduler.calculator = FixedDelay(60_000)

    assert scheduler.arm(task)
    first = scheduler._timers[task.id]
    assert scheduler.arm(task)
    await asyncio.sleep(0)

    assert scheduler.armed_task_ids() == [task.id]
    assert first.cancelled()

    scheduler.unschedule(task.id)


@pytest.mark.asyncio
async def test_arming_a_disabled_task_cancels_its_timer(scheduler, task_store):
    task = task_store.create(command="echo a", interval_value="1m")
    scheduler.calculator = FixedDelay(60_000)
    scheduler.arm(task)

    disabled = task_store.update(task.id, enabled=False)
    assert scheduler.arm(disabled) is False
    assert not scheduler.is_armed(task.id)


@pytest.mark.asyncio
async def test_interval_task_runs_and_is_rescheduled(scheduler, task_store, history_store, events):
    task = task_store.create(name="greet", command="echo hi", type="interval", interval_value="1m")
    received = []
    events.add_listener(lambda event, data: received.append((event, data)))

    await scheduler.start()
    await wait_for(lambda: len(history_store.list()) >= 1)

    entry = history_store.list()[-1]
    assert entry.task_id == task.id
    assert entry.task_name == "greet"
    assert entry.command == "echo hi"
    assert entry.status == "success"
    assert entry.exit_code == 0
    assert entry.stdout == "hi\n"
    assert entry.id.startswith("run_")

    stored = task_store.get(task.id)
    assert stored.last_executed_at is not None
    assert stored.next_execution_at is not None

    assert received[0][0] == TASK_EXECUTED
    assert received[0][1]['task_id'] == task.id
    assert received[0][1]['result']['stdout'] == "hi\n"

    await wait_for(lambda: scheduler.is_armed(task.id))
    scheduler.stop()


@pytest.mark.asyncio
async def test_execution_records_are_written_off_the_event_loop_thread(
    scheduler, storage, task_store, history_store, monkeypatch
):
    task = task_store.create(command="echo hi", interval_value="1m")
    writes = []
    original_set = storage.set

    def recording_set(key, value):
        writes.append((key, threading.get_ident()))
        original_set(key, value)

    monkeypatch.setattr(storage, "set", recording_set)
    loop_thread = threading.get_ident()

    await scheduler.start()
    await wait_for(lambda: len(history_store.list()) >= 1)
    await wait_for(lambda: task_store.get(task.id).last_executed_at is not None)
    scheduler.stop()
    await scheduler.wait_for_executions(timeout=2)

    history_writers = {ident for key, ident in writes if key == DB_KEYS['HISTORY']}
    assert history_writers
    assert loop_thread not in history_writers


@pytest.mark.asyncio
async def test_deleted_task_is_not_armed_after_reload(scheduler, task_store, executor):
    task = task_store.create(command="echo a", interval_value="1m")
    scheduler.calculator = FixedDelay(60_000)
    await scheduler.start()
    assert scheduler.is_armed(task.id)

    task_store.delete(task.id)
    await scheduler.reload()

    assert scheduler.armed_task_ids() == []
    assert executor.calls == []

    scheduler.stop()


@pytest.mark.asyncio
async def test_invalid_cron_task_is_left_unscheduled(scheduler, task_store):
    bad = task_store.create(command="echo a", type="cron", cron_expression="not-a-cron")
    good = task_store.create(command="echo b", type="interval", interval_value="1h")
    scheduler.calculator = compute_delay

    await scheduler.start()

    assert not scheduler.is_armed(bad.id)
    assert task_store.get(bad.id).next_execution_at is None
    assert scheduler.is_armed(good.id)

    scheduler.stop()


@pytest.mark.asyncio
async def test_non_string_daily_time_in_storage_does_not_block_start(scheduler, storage, task_store):
    good = task_store.create(command="echo a", interval_value="1h")
    records = storage.get(DB_KEYS['TASKS'])
    records.insert(0, dict(records[0], id="task_bad", type="daily", daily_time=900))
    storage.set(DB_KEYS['TASKS'], records)
    scheduler.calculator = compute_delay

    await scheduler.start()

    assert scheduler.is_armed(good.id)
    assert scheduler.is_armed("task_bad")

    scheduler.stop()


@pytest.mark.asyncio
async def test_unexpected_calculator_error_skips_only_that_task(scheduler, task_store):
    bad = task_store.create(command="echo a", interval_value="1m")
    good = task_store.create(command="echo b", interval_value="1m")

    def calculator(task, now=None):
        if task.id == bad.id:
            raise TypeError("expected string or bytes-like object")
        return 60_000

    scheduler.calculator = calculator

    await scheduler.start()

    assert not scheduler.is_armed(bad.id)
    assert scheduler.is_armed(good.id)

    scheduler.stop()
    await scheduler.start()
    assert scheduler.is_armed(good.id)

    scheduler.stop()


@pytest.mark.asyncio
async def test_task_disabled_while_waiting_is_not_rescheduled(scheduler, task_store, history_store):
    task = task_store.create(command="echo a", interval_value="1m")
    await scheduler.start()

    task_store.update(task.id, enabled=False)
    await wait_for(lambda: len(history_store.list()) == 1)
    await wait_for(lambda: not scheduler.is_armed(task.id))

    await asyncio.sleep(0.05)
    assert len(history_store.list()) == 1

    scheduler.stop()


@pytest.mark.asyncio
async def test_stop_does_not_interrupt_running_command(scheduler, task_store, history_store):
    executor = FakeExecutor(block=True)
    scheduler.executor = executor
    task = task_store.create(command="sleep 1", interval_value="1m")

    await scheduler.start()
    assert await asyncio.to_thread(executor.started.wait, 2)
    assert scheduler.task_state(task.id) == TASK_RUNNING

    scheduler.stop()
    executor.release()
    await scheduler.wait_for_executions(timeout=2)

    entries = history_store.list()
    assert len(entries) == 1
    assert entries[0].succeeded
    assert scheduler.task_state(task.id) == TASK_UNSCHEDULED


@pytest.mark.asyncio
async def test_rearming_a_running_task_waits_for_the_running_command(
    scheduler, task_store, history_store
):
    executor = FakeExecutor(block=True)
    scheduler.executor = executor
    task = task_store.create(command="sleep 1", interval_value="1m")

    await scheduler.start()
    assert await asyncio.to_thread(executor.started.wait, 2)

    assert scheduler.arm(task_store.update(task.id, name="renamed"))
    await asyncio.sleep(0.2)

    assert len(executor.calls) == 1
    assert scheduler.task_state(task.id) == TASK_RUNNING

    executor.release()
    await wait_for(lambda: len(history_store.list()) >= 2)
    assert history_store.list()[0].task_name == "renamed"

    scheduler.stop()
    await scheduler.wait_for_executions(timeout=2)


@pytest.mark.asyncio
async def test_task_state_transitions(scheduler, task_store):
    task = task_store.create(command="echo a", interval_value="1m")
    scheduler.calculator = FixedDelay(60_000)
    assert scheduler.task_state(task.id) == TASK_UNSCHEDULED

    await scheduler.start()
    assert scheduler.task_state(task.id) == TASK_ARMED

    scheduler.stop()
    await asyncio.sleep(0)
    assert scheduler.task_state(task.id) == TASK_UNSCHEDULED


@pytest.mark.asyncio
async def test_execute_now_records_history_and_notifies(scheduler, task_store, history_store, events):
    task = task_store.create(name="fail", command="false", interval_value="1m")
    scheduler.executor = FakeExecutor(stdout="", exit_code=1)
    received = []
    events.add_listener(lambda event, data: received.append(data))

    result = await scheduler.execute_now(task)

    assert result.success is False
    assert result.exit_code == 1
    entry = history_store.list()[0]
    assert entry.status == "failure"
    assert entry.exit_code == 1
    assert entry.stderr == "failed"
    assert task_store.get(task.id).last_executed_at == entry.executed_at
    assert received == [{'task_id': task.id, 'result': result.to_dict()}]


@pytest.mark.asyncio
async def test_execute_now_records_executor_crash_without_notifying(
        scheduler, task_store, history_store, events):
    task = task_store.create(command="echo a", interval_value="1m")
    scheduler.executor = FakeExecutor(error=RuntimeError("boom"))
    received = []
    events.add_listener(lambda event, data: received.append(data))

    result = await scheduler.execute_now(task)

    assert result is None
    entry = history_store.list()[0]
    assert entry.status == "failure"
    assert entry.exit_code == -1
    assert entry.stderr == "boom"
    assert received == []


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_execution(scheduler, task_store, history_store, events):
    task = task_store.create(command="echo a", interval_value="1m")
    delivered = []

    def broken(event, data):
        raise ValueError("listener bug")

    events.add_listener(broken)
    events.add_listener(lambda event, data: delivered.append(data['task_id']))

    result = await scheduler.execute_now(task)

    assert result.success
    assert delivered == [task.id]
    assert len(history_store.list()) == 1


@pytest.mark.asyncio
async def test_runtime_state_is_written_on_start_and_stop(scheduler, storage, task_store):
    task_store.create(command="echo a", interval_value="1m")
    scheduler.calculator = FixedDelay(60_000)

    await scheduler.start()
    state = storage.get(DB_KEYS['BG_STATE'])
    assert state['running'] is True
    assert state['task_count'] == 1
    assert state['started_at'] is not None

    scheduler.stop()
    state = storage.get(DB_KEYS['BG_STATE'])
    assert state['running'] is False
    assert state['stopped_at'] is not None


def test_scheduler_without_state_storage_skips_runtime_state(task_store, history_store, executor):
    scheduler = Scheduler(task_store, history_store, executor)
    scheduler.stop()
    assert not scheduler.running
