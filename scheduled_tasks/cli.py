"""
Command-line interface for scheduled task management.

Provides CLI commands for:
- Starting the scheduler and signalling a running one
- Adding/removing/modifying tasks
- Running a task immediately
- Viewing execution history
- Managing runtime configuration

The scheduler is generic and command-based - it simply executes
shell commands on a schedule without knowing what they do.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from scheduled_tasks.api import ScheduledTaskAPI
from scheduled_tasks.config import get_log_file
from scheduled_tasks.models import STATUS_FAILURE, STATUS_SUCCESS, Task, TaskType
from scheduled_tasks.recurrence import INTERVAL_MAP, describe_schedule
from scheduled_tasks.service import get_runtime_state

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = None, verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def format_timestamp(timestamp: Optional[int]) -> str:
    """Epoch milliseconds as local 'YYYY-MM-DD HH:MM:SS'."""
    if not timestamp:
        return '-'
    return datetime.fromtimestamp(timestamp / 1000).strftime('%Y-%m-%d %H:%M:%S')


def format_duration(ms: Optional[int]) -> str:
    """Milliseconds as '850ms', '1.50s' or '2.25m'."""
    if ms is None:
        return '-'
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.2f}s"
    return f"{ms / 60000:.2f}m"


def _process_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _schedule_fields(args) -> Dict[str, str]:
    """Translate --interval/--daily/--cron into task fields."""
    if getattr(args, 'interval', None):
        return {'type': TaskType.INTERVAL.value, 'interval_value': args.interval}
    if getattr(args, 'daily', None):
        return {'type': TaskType.DAILY.value, 'daily_time': args.daily}
    if getattr(args, 'cron', None):
        return {'type': TaskType.CRON.value, 'cron_expression': args.cron}
    return {}


def _print_task(task: Task):
    status = "✓" if task.enabled else "✗"
    print(f"{status} \033[1m{task.display_name}\033[0m ({task.id})")
    print(f"    Command:  {task.command}")
    print(f"    Schedule: {describe_schedule(task)}")
    print(f"    Last Run: {format_timestamp(task.last_executed_at)}")
    if task.enabled:
        print(f"    Next Run: {format_timestamp(task.next_execution_at)}")
    print()


async def _serve(api: ScheduledTaskAPI):
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def request_reload():
        logger.info("Received SIGHUP, reloading tasks...")
        loop.create_task(api.reload_scheduler())

    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
        if hasattr(signal, 'SIGHUP'):
            loop.add_signal_handler(signal.SIGHUP, request_reload)
    except NotImplementedError:
        # No loop signal support (Windows); Ctrl+C still raises KeyboardInterrupt
        pass

    await api.start_scheduler()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await api.close()


def cmd_start(args):
    """Start the scheduler."""
    setup_logging(
        log_file=args.log_file or str(get_log_file(args.data_dir)),
        verbose=args.verbose
    )

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir, background_mode=not args.foreground)

        if args.foreground:
            logger.info("Running in foreground mode. Press Ctrl+C to stop.")
        else:
            logger.info("Scheduler is running in the background")
            logger.info("Use 'scheduled-tasks stop' to stop it")
        logger.info(f"Data directory: {api.data_dir}")

        asyncio.run(_serve(api))

    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)


def _signal_scheduler(args, signum, action: str):
    api = ScheduledTaskAPI(data_dir=args.data_dir)
    state = get_runtime_state(api.storage)

    if not state or not state.running or not _process_alive(state.pid):
        logger.warning("Scheduler does not appear to be running")
        return

    logger.info(f"{action} scheduler (PID: {state.pid})...")
    os.kill(state.pid, signum)


def cmd_stop(args):
    """Stop a running scheduler."""
    setup_logging(verbose=args.verbose)

    try:
        _signal_scheduler(args, signal.SIGTERM, "Stopping")
    except Exception as e:
        logger.error(f"Failed to stop scheduler: {e}")
        sys.exit(1)


def cmd_reload(args):
    """Ask a running scheduler to reload its tasks."""
    setup_logging(verbose=args.verbose)

    if not hasattr(signal, 'SIGHUP'):
        logger.error("Reload is not supported on this platform; restart the scheduler instead")
        sys.exit(1)

    try:
        _signal_scheduler(args, signal.SIGHUP, "Reloading")
    except Exception as e:
        logger.error(f"Failed to reload scheduler: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show scheduler status."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        state = get_runtime_state(api.storage)
        tasks = asyncio.run(api.list_tasks())

        print("\n┌─────────────────────────────────────────────────────────────────┐")
        print("│                      SCHEDULER STATUS                           │")
        print("└─────────────────────────────────────────────────────────────────┘\n")

        if state and state.running and _process_alive(state.pid):
            print(f"  Status:     \033[92m● Running\033[0m")
            print(f"  PID:        {state.pid}")
            print(f"  Started:    {format_timestamp(state.started_at)}")
            print(f"  Mode:       {'background' if state.background_mode else 'foreground'}")
            print(f"  Armed:      {state.task_count} task(s) at start")
        else:
            print(f"  Status:     \033[91m○ Not Running\033[0m")
            if state and state.stopped_at:
                print(f"  Stopped:    {format_timestamp(state.stopped_at)}")

        print(f"  Data Dir:   {api.data_dir}")
        print(f"  Log File:   {get_log_file(args.data_dir)}")

        enabled = [t for t in tasks if t.enabled]
        print(f"\n  Tasks: {len(tasks)} ({len(enabled)} enabled)")

        if enabled:
            print("\n  ┌" + "─" * 60 + "┐")
            print("  │ Upcoming" + " " * 52 + "│")
            print("  ├" + "─" * 60 + "┤")
            for task in enabled:
                name = task.display_name[:30]
                next_run = format_timestamp(task.next_execution_at)
                print(f"  │  {name:<30} Next: {next_run:<19}   │")
            print("  └" + "─" * 60 + "┘")

        if not state or not state.running:
            print("\n  Start the scheduler with: scheduled-tasks start --foreground")
        print()

    except Exception as e:
        logger.error(f"Failed to get status: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


def cmd_list(args):
    """List all tasks."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        tasks = asyncio.run(api.list_tasks())

        print(f"\n=== Tasks ({len(tasks)}) ===\n")
        if not tasks:
            print("  No tasks defined. Add one with: scheduled-tasks add NAME --command ...")
            print()
            return

        for task in tasks:
            _print_task(task)

    except Exception as e:
        logger.error(f"Failed to list tasks: {e}")
        sys.exit(1)


def cmd_add(args):
    """Add a new scheduled task."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        task = asyncio.run(api.create_task(
            name=args.name,
            command=args.command,
            enabled=not args.disabled,
            **_schedule_fields(args)
        ))

        logger.info(f"Added task '{task.display_name}' ({task.id})")
        logger.info(f"Command: {task.command}")
        logger.info(f"Schedule: {describe_schedule(task)}")
        logger.info("Run 'scheduled-tasks reload' for a running scheduler to pick it up")

    except Exception as e:
        logger.error(f"Failed to add task: {e}")
        sys.exit(1)


def cmd_update(args):
    """Modify an existing task."""
    setup_logging(verbose=args.verbose)

    updates = _schedule_fields(args)
    if args.name is not None:
        updates['name'] = args.name
    if args.command is not None:
        updates['command'] = args.command

    if not updates:
        logger.error("Nothing to update: pass --name, --command or a schedule option")
        sys.exit(1)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        task = asyncio.run(api.update_task(args.id, **updates))
    except Exception as e:
        logger.error(f"Failed to update task: {e}")
        sys.exit(1)

    if task is None:
        logger.error(f"Task '{args.id}' not found")
        sys.exit(1)

    logger.info(f"Updated task '{task.display_name}' ({task.id})")
    logger.info("Run 'scheduled-tasks reload' for a running scheduler to pick it up")


def cmd_remove(args):
    """Remove a scheduled task."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        removed = asyncio.run(api.delete_task(args.id))
    except Exception as e:
        logger.error(f"Failed to remove task: {e}")
        sys.exit(1)

    if not removed:
        logger.error(f"Task '{args.id}' not found")
        sys.exit(1)

    logger.info(f"Removed task '{args.id}'")
    logger.info("Run 'scheduled-tasks reload' for a running scheduler to pick it up")


def _set_enabled(args, enabled: bool):
    verb = "enable" if enabled else "disable"
    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        task = asyncio.run(api.update_task(args.id, enabled=enabled))
    except Exception as e:
        logger.error(f"Failed to {verb} task: {e}")
        sys.exit(1)

    if task is None:
        logger.error(f"Task '{args.id}' not found")
        sys.exit(1)

    logger.info(f"{verb.capitalize()}d task '{task.display_name}'")
    logger.info("Run 'scheduled-tasks reload' for a running scheduler to pick it up")


def cmd_enable(args):
    """Enable a task."""
    setup_logging(verbose=args.verbose)
    _set_enabled(args, True)


def cmd_disable(args):
    """Disable a task."""
    setup_logging(verbose=args.verbose)
    _set_enabled(args, False)


def cmd_run(args):
    """Run a task immediately and record it in the history."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        task = asyncio.run(api.get_task(args.id))
        if task is None:
            logger.error(f"Task '{args.id}' not found")
            sys.exit(1)

        logger.info(f"Running task '{task.display_name}' now...")
        logger.info(f"Command: {task.command}")
        result = asyncio.run(api.execute_task_now(task))

    except Exception as e:
        logger.error(f"Failed to run task: {e}", exc_info=args.verbose)
        sys.exit(1)

    if result is None:
        logger.error(f"Task '{task.display_name}' could not be executed, see history for details")
        sys.exit(1)

    if result.stdout:
        print(result.stdout, end='' if result.stdout.endswith('\n') else '\n')
    if result.stderr:
        print(result.stderr, end='' if result.stderr.endswith('\n') else '\n', file=sys.stderr)

    if result.success:
        logger.info(f"Task completed successfully in {format_duration(result.duration)}")
    else:
        logger.error(
            f"Task failed with exit code {result.exit_code} after {format_duration(result.duration)}"
        )
        sys.exit(1)


def cmd_history(args):
    """Show execution history."""
    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        history = asyncio.run(api.list_history(
            task_id=args.task,
            status=args.status,
            limit=args.limit if not args.show_all else None
        ))

        if not history:
            print("\nNo execution history found.")
            if args.task:
                print(f"  Filter: task = '{args.task}'")
            if args.status:
                print(f"  Filter: status = '{args.status}'")
            return

        if args.json:
            print(json.dumps([entry.to_dict() for entry in history], indent=2))
            return

        rows = []
        for entry in history:
            rows.append({
                'task': entry.task_name or entry.task_id,
                'executed_at': format_timestamp(entry.executed_at),
                'duration': format_duration(entry.duration),
                'exit_code': str(entry.exit_code),
                'status': entry.status,
                'error': entry.stderr if args.verbose and not entry.succeeded else None,
            })

        headers = ['Task', 'Executed At', 'Duration', 'Exit', 'Status']
        keys = ['task', 'executed_at', 'duration', 'exit_code', 'status']
        col_widths = [max(len(h), max(len(r[k]) for r in rows)) for h, k in zip(headers, keys)]

        def make_row(cells, widths):
            return "│ " + " │ ".join(cell.ljust(w) for cell, w in zip(cells, widths)) + " │"

        def make_separator(widths, left, mid, right, fill='─'):
            return left + mid.join(fill * (w + 2) for w in widths) + right

        print()
        print(make_separator(col_widths, '┌', '┬', '┐'))
        print(make_row(headers, col_widths))
        print(make_separator(col_widths, '├', '┼', '┤'))

        for row in rows:
            cells = [row[k] for k in keys]
            if args.color:
                colour = '92' if row['status'] == STATUS_SUCCESS else '91'
                cells[-1] = f"\033[{colour}m{row['status']}\033[0m" + ' ' * (col_widths[-1] - len(row['status']))
                print("│ " + " │ ".join(c.ljust(w) for c, w in zip(cells[:-1], col_widths)) + " │ " + cells[-1] + " │")
            else:
                print(make_row(cells, col_widths))

            if row['error']:
                print(f"│   └─ Error: {row['error'].strip()[:80]}")

        print(make_separator(col_widths, '└', '┴', '┘'))
        print(f"\nShowing {len(history)} run(s)")

    except Exception as e:
        print(f"Error reading history: {e}")
        sys.exit(1)


def cmd_clear_history(args):
    """Delete all execution history."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        asyncio.run(api.clear_history())
        logger.info("Execution history cleared")
    except Exception as e:
        logger.error(f"Failed to clear history: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        config = asyncio.run(api.get_config())

        print(f"\nData directory: {api.data_dir}")
        print(f"Log file: {get_log_file(args.data_dir)}")
        print(f"max_history_items: {config.max_history_items}")
        print(f"max_output_length: {config.max_output_length}")
        print(f"enable_logging: {config.enable_logging}")

    except Exception as e:
        logger.error(f"Failed to show config: {e}")
        sys.exit(1)


def cmd_set_config(args):
    """Update configuration options."""
    setup_logging(verbose=args.verbose)

    updates = {}
    for assignment in args.assignments:
        key, sep, value = assignment.partition('=')
        if not sep or not key:
            logger.error(f"Expected KEY=VALUE, got '{assignment}'")
            sys.exit(1)
        updates[key.strip()] = value.strip()

    try:
        api = ScheduledTaskAPI(data_dir=args.data_dir)
        config = asyncio.run(api.update_config(**updates))
        logger.info(f"Configuration updated: {config.to_dict()}")
    except Exception as e:
        logger.error(f"Failed to update config: {e}")
        sys.exit(1)


def _add_schedule_options(parser, required: bool):
    schedule_group = parser.add_mutually_exclusive_group(required=required)
    schedule_group.add_argument('--interval', type=str, choices=list(INTERVAL_MAP),
                                help='Fixed interval')
    schedule_group.add_argument('--daily', type=str, metavar='HH:MM',
                                help='Run every day at this local time')
    schedule_group.add_argument('--cron', type=str, metavar='EXPR',
                                help='5-field cron expression, e.g. "*/5 * * * *"')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='scheduled-tasks',
        description="Scheduled Tasks - Run shell commands on interval, daily or cron schedules",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-d', '--data-dir',
        type=str,
        help='Directory for task, history and config files (default: ~/.scheduled_tasks)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the scheduler')
    start_parser.add_argument(
        '--foreground',
        action='store_true',
        help='Run in foreground (interactive mode)'
    )
    start_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )
    start_parser.set_defaults(func=cmd_start)

    # Stop/reload commands
    stop_parser = subparsers.add_parser('stop', help='Stop the running scheduler')
    stop_parser.set_defaults(func=cmd_stop)

    reload_parser = subparsers.add_parser('reload', help='Reload tasks in the running scheduler')
    reload_parser.set_defaults(func=cmd_reload)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    # List command
    list_parser = subparsers.add_parser('list', help='List all tasks')
    list_parser.set_defaults(func=cmd_list)

    # Add command
    add_parser = subparsers.add_parser('add', help='Add a new scheduled task')
    add_parser.add_argument('name', help='Task name')
    add_parser.add_argument(
        '--command', '-c',
        required=True,
        help='Shell command to execute (e.g., "backup.sh --quiet")'
    )
    _add_schedule_options(add_parser, required=True)
    add_parser.add_argument('--disabled', action='store_true',
                            help='Create the task without scheduling it')
    add_parser.set_defaults(func=cmd_add)

    # Update command
    update_parser = subparsers.add_parser('update', help='Modify a task')
    update_parser.add_argument('id', help='Task ID')
    update_parser.add_argument('--name', type=str, help='New task name')
    update_parser.add_argument('--command', '-c', type=str, help='New shell command')
    _add_schedule_options(update_parser, required=False)
    update_parser.set_defaults(func=cmd_update)

    # Remove command
    remove_parser = subparsers.add_parser('remove', help='Remove a task')
    remove_parser.add_argument('id', help='Task ID to remove')
    remove_parser.set_defaults(func=cmd_remove)

    # Enable command
    enable_parser = subparsers.add_parser('enable', help='Enable a task')
    enable_parser.add_argument('id', help='Task ID to enable')
    enable_parser.set_defaults(func=cmd_enable)

    # Disable command
    disable_parser = subparsers.add_parser('disable', help='Disable a task')
    disable_parser.add_argument('id', help='Task ID to disable')
    disable_parser.set_defaults(func=cmd_disable)

    # Run command
    run_parser = subparsers.add_parser('run', help='Run a task immediately')
    run_parser.add_argument('id', help='Task ID to run')
    run_parser.set_defaults(func=cmd_run)

    # History command
    history_parser = subparsers.add_parser('history', help='View execution history')
    history_parser.add_argument('--task', '-t', type=str, help='Filter by task ID')
    history_parser.add_argument('--status', '-s', type=str,
                                choices=[STATUS_SUCCESS, STATUS_FAILURE],
                                help='Filter by status')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true',
                                help='Output in JSON format')
    history_parser.add_argument('--color', action='store_true',
                                help='Colorize status output')
    history_parser.set_defaults(func=cmd_history)

    # Clear history command
    clear_parser = subparsers.add_parser('clear-history', help='Delete all execution history')
    clear_parser.set_defaults(func=cmd_clear_history)

    # Config commands
    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    set_config_parser = subparsers.add_parser('set-config', help='Update configuration')
    set_config_parser.add_argument('assignments', nargs='+', metavar='KEY=VALUE',
                                   help='e.g. max_history_items=1000')
    set_config_parser.set_defaults(func=cmd_set_config)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
