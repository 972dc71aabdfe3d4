"""
Scheduled Tasks

Runs shell commands on recurring schedules and keeps a bounded history of
every execution.

Features:
- Fixed intervals, daily wall-clock times and 5-field cron expressions
- Generic command execution with timeout and output limits
- Persistent task definitions, history and configuration (JSON files)
- One live timer per enabled task, rebuilt on start/reload
- Execution notifications for UI layers
"""

from scheduled_tasks.api import ScheduledTaskAPI
from scheduled_tasks.jobs import CommandExecutor
from scheduled_tasks.models import ExecutionResult, HistoryEntry, Task, TaskType
from scheduled_tasks.service import Scheduler

__version__ = "0.1.0"
__all__ = [
    "ScheduledTaskAPI",
    "Scheduler",
    "CommandExecutor",
    "Task",
    "TaskType",
    "HistoryEntry",
    "ExecutionResult",
]
