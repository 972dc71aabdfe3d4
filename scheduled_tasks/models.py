"""
Data models for scheduled tasks and their execution history.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskType(str, Enum):
    """Recurrence model of a task"""
    INTERVAL = "interval"
    DAILY = "daily"
    CRON = "cron"


class TaskValidationError(ValueError):
    """Raised when a task definition is rejected before persistence."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id(prefix: str = "task") -> str:
    """Time-based prefix plus a random suffix, unique within the process lifetime."""
    return f"{prefix}_{now_ms()}_{uuid.uuid4().hex[:9]}"


@dataclass
class Task:
    """A persisted command plus its recurrence rule"""
    id: str
    command: str
    type: str = TaskType.INTERVAL.value
    name: Optional[str] = None
    interval_value: Optional[str] = None  # '1m', '15m', '30m', '1h'
    daily_time: Optional[str] = None  # HH:MM, local time
    cron_expression: Optional[str] = None  # 5-field cron
    enabled: bool = True
    created_at: int = 0
    updated_at: int = 0
    last_executed_at: Optional[int] = None
    next_execution_at: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def validate(self) -> List[str]:
        """
        Validate the task definition.

        A malformed daily time is not reported here: it is accepted and
        falls back to a 24 hour cycle when scheduled.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not isinstance(self.command, str):
            errors.append(f"'command' must be a string, got {type(self.command).__name__}")
        elif not self.command.strip():
            errors.append("'command' cannot be empty")

        for name in ('interval_value', 'daily_time', 'cron_expression'):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                errors.append(f"'{name}' must be a string, got {type(value).__name__}")

        valid_types = [t.value for t in TaskType]
        if self.type not in valid_types:
            errors.append(f"'type' must be one of {', '.join(valid_types)}, got '{self.type}'")
        elif self.type == TaskType.DAILY.value and not self.daily_time:
            errors.append("'daily' schedule requires 'daily_time'")
        elif self.type == TaskType.CRON.value and not (
            isinstance(self.cron_expression, str) and self.cron_expression.strip()
        ):
            errors.append("'cron' schedule requires 'cron_expression'")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        """Create from a persisted record, ignoring unknown keys"""
        known = {k: v for k, v in data.items() if k in cls.field_names()}
        if isinstance(known.get('type'), TaskType):
            known['type'] = known['type'].value
        return cls(**known)


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of one execution attempt"""
    task_id: str
    task_name: Optional[str]  # snapshot, the task may be renamed or deleted later
    command: str  # snapshot
    executed_at: int  # start time
    status: str  # 'success' or 'failure'
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: int = 0  # ms
    output_truncated: bool = False
    id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        """Create from a persisted record, ignoring unknown keys"""
        names = [f.name for f in fields(cls)]
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class ExecutionResult:
    """Outcome of running one command"""
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration: int  # ms
    platform: Optional[str] = None  # 'windows', 'linux', 'macos'
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RuntimeState:
    """Last known scheduler lifecycle state, written for observability only"""
    running: bool = False
    started_at: Optional[int] = None
    stopped_at: Optional[int] = None
    task_count: int = 0
    background_mode: bool = False
    pid: Optional[int] = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuntimeState':
        names = [f.name for f in fields(cls)]
        return cls(**{k: v for k, v in data.items() if k in names})
