"""
Recurrence calculations.

Maps a task's recurrence rule and a reference time to the delay, in
milliseconds, until its next fire. Every function takes ``now`` explicitly
so the scheduler can recompute the delay from the post-execution time.

Failure policy differs by rule type:
- interval: unknown codes fall back to the smallest interval
- daily: malformed times fall back to a 24 hour delay (logged as an error)
- cron: unparsable expressions raise RecurrenceError and must not be armed
"""

import logging
import re
from datetime import datetime, timedelta, tzinfo
from typing import List, Optional

from apscheduler.triggers.cron import CronTrigger
from tzlocal import get_localzone

from scheduled_tasks.models import Task, TaskType

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

INTERVAL_MAP = {
    '1m': MINUTE_MS,
    '15m': 15 * MINUTE_MS,
    '30m': 30 * MINUTE_MS,
    '1h': HOUR_MS,
}
DEFAULT_INTERVAL = '1m'

INTERVAL_LABELS = {
    '1m': 'every 1 minute',
    '15m': 'every 15 minutes',
    '30m': 'every 30 minutes',
    '1h': 'every hour',
}

DAILY_TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')

# Standard crontab weekday numbering: 0 and 7 are both Sunday
CRON_WEEKDAYS = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']


class RecurrenceError(Exception):
    """Raised when a recurrence rule cannot produce a next fire time."""
    pass


def local_now() -> datetime:
    """Current time, aware, in the local time zone."""
    return datetime.now(get_localzone())


def _localize(now: Optional[datetime]) -> datetime:
    if now is None:
        return local_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=get_localzone())
    return now


def _delay_ms(target: datetime, now: datetime) -> int:
    # Compare absolute instants; subtracting aware datetimes that share a
    # tzinfo would ignore a DST offset change between them.
    return max(0, int(round((target.timestamp() - now.timestamp()) * 1000)))


def interval_delay(interval_value: Optional[str]) -> int:
    """
    Delay for a fixed interval code.

    Unknown codes fall back to the smallest interval.
    """
    delay = INTERVAL_MAP.get(interval_value) if isinstance(interval_value, str) else None
    if delay is None:
        logger.warning(f"Unknown interval '{interval_value}', using {DEFAULT_INTERVAL}")
        return INTERVAL_MAP[DEFAULT_INTERVAL]
    return delay


def daily_delay(daily_time: Optional[str], now: Optional[datetime] = None) -> int:
    """
    Delay until the next local occurrence of ``HH:MM`` strictly after ``now``.

    If today's occurrence is at or before ``now`` the delay rolls over to
    tomorrow. A time that does not exist on the day of a spring-forward
    transition resolves to the equivalent instant after the jump.

    Args:
        daily_time: Wall-clock time, ``HH:MM``
        now: Reference time (defaults to the current local time)

    Returns:
        Delay in milliseconds; 24 hours if daily_time is malformed
    """
    match = DAILY_TIME_PATTERN.match(daily_time) if isinstance(daily_time, str) else None
    if not match:
        logger.error(f"Invalid daily time format: {daily_time!r}, retrying in 24h")
        return DAY_MS

    hours, minutes = int(match.group(1)), int(match.group(2))
    now = _localize(now)

    target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0, fold=0)
    if target.timestamp() <= now.timestamp():
        target = target + timedelta(days=1)

    return _delay_ms(target, now)


def _weekday_number(text: str) -> int:
    text = text.strip().lower()
    if text.isdigit():
        value = int(text)
        if not 0 <= value <= 7:
            raise ValueError(f"weekday out of range: {text}")
        return value
    if text in CRON_WEEKDAYS:
        return CRON_WEEKDAYS.index(text)
    raise ValueError(f"invalid weekday: {text!r}")


def crontab_day_of_week(field: str) -> str:
    """
    Translate a crontab day-of-week field into APScheduler weekday names.

    APScheduler numbers weekdays from Monday, crontab from Sunday, so the
    field is expanded to explicit names, e.g. ``1-5`` -> ``mon,tue,wed,thu,fri``.
    """
    if field in ('*', '?'):
        return '*'

    days = set()
    for part in field.split(','):
        step = 1
        has_step = '/' in part
        if has_step:
            part, step_text = part.split('/', 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"invalid step: {step_text}")

        if part == '*':
            start, end = 0, 6
        elif '-' in part:
            first, last = part.split('-', 1)
            start, end = _weekday_number(first), _weekday_number(last)
            if start > end:
                raise ValueError(f"invalid weekday range: {part}")
        else:
            start = _weekday_number(part)
            end = 6 if has_step else start

        days.update(day % 7 for day in range(start, end + 1, step))

    return ','.join(CRON_WEEKDAYS[day] for day in sorted(days))


def _is_unrestricted(field: str) -> bool:
    return field in ('*', '?')


def build_cron_triggers(expression: str, timezone: Optional[tzinfo] = None) -> List[CronTrigger]:
    """
    Build APScheduler triggers from a standard 5-field cron expression.

    ``CronTrigger`` requires every field to match, whereas crontab fires when
    either the day-of-month or the day-of-week matches once both are
    restricted. That case yields two triggers, one per day field, and the
    expression fires at the earlier of them.

    Raises:
        RecurrenceError: If the expression cannot be parsed
    """
    if not isinstance(expression, str):
        raise RecurrenceError(f"Invalid cron expression: {expression!r} (expected a string)")

    parts = expression.split()
    if len(parts) != 5:
        raise RecurrenceError(f"Invalid cron expression: {expression!r} (expected 5 fields)")

    minute, hour, day, month, day_of_week = parts
    if _is_unrestricted(day):
        day = '*'
    if day != '*' and not _is_unrestricted(day_of_week):
        day_fields = [(day, '*'), ('*', day_of_week)]
    else:
        day_fields = [(day, day_of_week)]

    try:
        return [
            CronTrigger(
                minute=minute,
                hour=hour,
                day=dom,
                month=month,
                day_of_week=crontab_day_of_week(dow),
                timezone=timezone or get_localzone(),
            )
            for dom, dow in day_fields
        ]
    except (ValueError, TypeError) as e:
        raise RecurrenceError(f"Invalid cron expression: {expression!r}: {e}") from e


def next_cron_fire_time(expression: str, now: Optional[datetime] = None) -> datetime:
    """
    Next fire time of a cron expression strictly after ``now``.

    Raises:
        RecurrenceError: If the expression is invalid or never fires again
    """
    now = _localize(now)
    after = now + timedelta(microseconds=1)
    candidates = [
        trigger.get_next_fire_time(None, after)
        for trigger in build_cron_triggers(expression, timezone=now.tzinfo)
    ]
    candidates = [fire_time for fire_time in candidates if fire_time is not None]
    if not candidates:
        raise RecurrenceError(f"Cron expression {expression!r} has no future fire time")
    return min(candidates)


def cron_delay(expression: str, now: Optional[datetime] = None) -> int:
    """Delay until the next fire of a cron expression, in milliseconds."""
    now = _localize(now)
    next_fire = next_cron_fire_time(expression, now)
    logger.debug(f"Cron '{expression}' next execution: {next_fire.isoformat()}")
    return _delay_ms(next_fire, now)


def compute_delay(task: Task, now: Optional[datetime] = None) -> int:
    """
    Delay until the task's next fire.

    Raises:
        RecurrenceError: For cron tasks with an unusable expression, or an
            unknown task type
    """
    if task.type == TaskType.INTERVAL.value:
        return interval_delay(task.interval_value)
    if task.type == TaskType.DAILY.value:
        return daily_delay(task.daily_time, now)
    if task.type == TaskType.CRON.value:
        return cron_delay(task.cron_expression, now)
    raise RecurrenceError(f"Unknown task type: {task.type!r}")


def schedule_diagnostics(task: Task) -> List[str]:
    """
    Describe problems with a task's recurrence rule without scheduling it.

    Covers both the soft-fail cases (unknown interval, malformed daily time)
    and the hard-fail case (unusable cron expression).
    """
    problems = []
    if task.type == TaskType.INTERVAL.value and not (
        isinstance(task.interval_value, str) and task.interval_value in INTERVAL_MAP
    ):
        problems.append(
            f"unknown interval {task.interval_value!r}, will run {INTERVAL_LABELS[DEFAULT_INTERVAL]}"
        )
    elif task.type == TaskType.DAILY.value and not (
        isinstance(task.daily_time, str) and DAILY_TIME_PATTERN.match(task.daily_time)
    ):
        problems.append(f"invalid daily time {task.daily_time!r}, will retry every 24 hours")
    elif task.type == TaskType.CRON.value:
        try:
            build_cron_triggers(task.cron_expression)
        except RecurrenceError as e:
            problems.append(f"{e}; task will not be scheduled")
    return problems


def describe_schedule(task: Task) -> str:
    """Human-readable schedule label."""
    if task.type == TaskType.INTERVAL.value:
        if isinstance(task.interval_value, str) and task.interval_value in INTERVAL_LABELS:
            return INTERVAL_LABELS[task.interval_value]
        return str(task.interval_value)
    if task.type == TaskType.DAILY.value:
        return f"daily at {task.daily_time}"
    if task.type == TaskType.CRON.value:
        return f"cron: {task.cron_expression}"
    return "unknown"
