#!/usr/bin/env python3
"""
Basic Usage Examples for ScheduledTaskAPI

This script demonstrates creating tasks, running them on demand,
letting the scheduler fire them, and reading the execution history.
Data goes to a temporary directory so your real tasks are untouched.
"""

import asyncio
import sys
import tempfile
from pathlib import Path

# Add parent directory to path for imports (if running as standalone script)
sys.path.insert(0, str(Path(__file__).parent.parent))

from scheduled_tasks import ScheduledTaskAPI
from scheduled_tasks.recurrence import describe_schedule


async def example_1_create_tasks(api: ScheduledTaskAPI):
    """Example 1: One task per schedule type"""
    print("\n" + "=" * 60)
    print("Example 1: Create interval, daily and cron tasks")
    print("=" * 60)

    await api.create_task(name="heartbeat", command="date", type="interval", interval_value="1m")
    await api.create_task(name="nightly", command="echo nightly", type="daily", daily_time="02:30")
    await api.create_task(name="weekdays", command="uptime", type="cron",
                          cron_expression="0 9 * * 1-5")

    for task in await api.list_tasks():
        print(f"  {task.display_name:10s} {describe_schedule(task):25s} {task.command}")


async def example_2_run_now(api: ScheduledTaskAPI):
    """Example 2: Run a task immediately"""
    print("\n" + "=" * 60)
    print("Example 2: Execute a task now")
    print("=" * 60)

    task = (await api.list_tasks())[0]
    result = await api.execute_task_now(task)

    print(f"\n  success={result.success} exit_code={result.exit_code} duration={result.duration}ms")
    print(f"  stdout: {result.stdout.strip()}")


async def example_3_scheduler_and_events(api: ScheduledTaskAPI):
    """Example 3: Start the scheduler and listen for executions"""
    print("\n" + "=" * 60)
    print("Example 3: Scheduler notifications")
    print("=" * 60)

    def on_executed(event, data):
        print(f"  {event}: {data['task_id']} -> exit {data['result']['exit_code']}")

    remove = api.add_listener(on_executed)
    await api.start_scheduler()

    print(f"\n  Armed tasks: {len(api.scheduler.armed_task_ids())}")
    print("  Waiting 65 seconds for the interval task to fire...")
    await asyncio.sleep(65)

    remove()
    await api.stop_scheduler()


async def example_4_history(api: ScheduledTaskAPI):
    """Example 4: Inspect execution history"""
    print("\n" + "=" * 60)
    print("Example 4: Execution history")
    print("=" * 60)

    for entry in await api.list_history(limit=5):
        print(f"  {entry.task_name:10s} {entry.status:8s} exit={entry.exit_code} {entry.duration}ms")


async def run_examples(with_scheduler: bool):
    with tempfile.TemporaryDirectory() as data_dir:
        api = ScheduledTaskAPI(data_dir=data_dir)
        try:
            await example_1_create_tasks(api)
            await example_2_run_now(api)
            if with_scheduler:
                await example_3_scheduler_and_events(api)
            await example_4_history(api)
        finally:
            await api.close()


def main():
    """Run all examples"""
    print("\n" + "=" * 60)
    print("SCHEDULED TASKS - USAGE EXAMPLES")
    print("=" * 60)

    try:
        asyncio.run(run_examples(with_scheduler="--with-scheduler" in sys.argv))

        print("\n" + "=" * 60)
        print("All examples completed successfully!")
        print("=" * 60 + "\n")

    except Exception as e:
        print(f"\nError: {e}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    main()
