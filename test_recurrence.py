"""
Tests for delay calculation across interval, daily and cron rules.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from scheduled_tasks.models import Task
from scheduled_tasks.recurrence import (
    DAY_MS,
    HOUR_MS,
    MINUTE_MS,
    RecurrenceError,
    compute_delay,
    cron_delay,
    crontab_day_of_week,
    daily_delay,
    describe_schedule,
    interval_delay,
    next_cron_fire_time,
    schedule_diagnostics,
)

UTC = ZoneInfo("UTC")
NEW_YORK = ZoneInfo("America/New_York")


def make_task(**fields):
    return Task(id="task_1", command="echo hi", **fields)


@pytest.mark.parametrize("code, expected", [
    ("1m", 60_000),
    ("15m", 900_000),
    ("30m", 1_800_000),
    ("1h", 3_600_000),
])
def test_interval_table(code, expected):
    assert interval_delay(code) == expected


def test_unknown_interval_falls_back_to_one_minute():
    assert interval_delay("5m") == MINUTE_MS
    assert interval_delay(None) == MINUTE_MS


def test_daily_later_today():
    now = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
    assert daily_delay("09:30", now) == 90 * MINUTE_MS


def test_daily_rolls_over_when_time_has_passed():
    now = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
    assert daily_delay("07:00", now) == 23 * HOUR_MS


def test_daily_rolls_over_when_time_is_now():
    now = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
    assert daily_delay("08:00", now) == DAY_MS


def test_daily_is_never_negative():
    now = datetime(2024, 1, 15, 23, 59, 59, 999000, tzinfo=UTC)
    delay = daily_delay("23:59", now)
    assert 0 < delay <= DAY_MS


@pytest.mark.parametrize("value", ["25:00", "9:30", "12:60", "", None, "noon", 900])
def test_malformed_daily_time_waits_a_day(value):
    now = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
    assert daily_delay(value, now) == DAY_MS


def test_daily_across_spring_forward():
    # 01:00 EST; clocks jump from 02:00 to 03:00
    now = datetime(2024, 3, 10, 1, 0, tzinfo=NEW_YORK)
    assert daily_delay("03:30", now) == 90 * MINUTE_MS


def test_daily_across_fall_back():
    # 00:30 EDT; 01:00-02:00 happens twice, the day is 25 hours long
    now = datetime(2024, 11, 3, 0, 30, tzinfo=NEW_YORK)
    assert daily_delay("03:00", now) == 3 * HOUR_MS + 30 * MINUTE_MS


@pytest.mark.parametrize("field, expected", [
    ("*", "*"),
    ("1-5", "mon,tue,wed,thu,fri"),
    ("0", "sun"),
    ("7", "sun"),
    ("0,6", "sun,sat"),
    ("*/2", "sun,tue,thu,sat"),
    ("sat", "sat"),
    ("mon-wed", "mon,tue,wed"),
])
def test_crontab_day_of_week(field, expected):
    assert crontab_day_of_week(field) == expected


@pytest.mark.parametrize("field", ["8", "fri-mon", "*/0", "funday"])
def test_crontab_day_of_week_rejects_bad_fields(field):
    with pytest.raises(ValueError):
        crontab_day_of_week(field)


def test_cron_delay_to_next_quarter_hour():
    now = datetime(2024, 1, 15, 10, 7, 30, tzinfo=UTC)
    assert cron_delay("*/15 * * * *", now) == 7 * MINUTE_MS + 30 * 1000


def test_cron_next_fire_is_strictly_after_now():
    now = datetime(2024, 1, 15, 10, 15, 0, tzinfo=UTC)
    next_fire = next_cron_fire_time("*/15 * * * *", now)
    assert next_fire > now
    assert next_fire == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


def test_cron_day_of_week_uses_crontab_numbering():
    # Sunday 2024-01-14; "1" is Monday in crontab
    now = datetime(2024, 1, 14, 10, 0, tzinfo=UTC)
    next_fire = next_cron_fire_time("0 9 * * 1", now)
    assert next_fire == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
    assert next_fire.weekday() == 0


def test_cron_next_fire_matches_schedule():
    now = datetime(2024, 6, 1, 3, 0, tzinfo=NEW_YORK)
    next_fire = next_cron_fire_time("30 2 * * *", now)
    assert (next_fire.hour, next_fire.minute) == (2, 30)
    assert next_fire.date() == datetime(2024, 6, 2).date()


def test_cron_day_of_month_or_day_of_week():
    # Monday 2024-01-01: "13th or Friday" fires on Friday the 5th
    now = datetime(2024, 1, 1, tzinfo=UTC)
    assert next_cron_fire_time("0 0 13 * 5", now) == datetime(2024, 1, 5, tzinfo=UTC)

    # Saturday 2024-02-10: the 13th (a Tuesday) comes before the next Friday
    now = datetime(2024, 2, 10, tzinfo=UTC)
    assert next_cron_fire_time("0 0 13 * 5", now) == datetime(2024, 2, 13, tzinfo=UTC)


def test_cron_wildcard_day_of_week_keeps_day_of_month_only():
    now = datetime(2024, 1, 1, tzinfo=UTC)
    assert next_cron_fire_time("0 0 13 * *", now) == datetime(2024, 1, 13, tzinfo=UTC)
    assert next_cron_fire_time("0 0 ? * 5", now) == datetime(2024, 1, 5, tzinfo=UTC)


@pytest.mark.parametrize("expression", [
    "not-a-cron",
    "* * * *",
    "* * * * * *",
    "61 * * * *",
    "* 25 * * *",
    "",
    None,
    900,
])
def test_invalid_cron_raises(expression):
    with pytest.raises(RecurrenceError):
        cron_delay(expression, datetime(2024, 1, 15, tzinfo=UTC))


def test_compute_delay_dispatches_on_type():
    now = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)

    assert compute_delay(make_task(type="interval", interval_value="30m"), now) == 30 * MINUTE_MS
    assert compute_delay(make_task(type="daily", daily_time="08:01"), now) == MINUTE_MS
    assert compute_delay(make_task(type="cron", cron_expression="0 9 * * *"), now) == HOUR_MS


def test_compute_delay_rejects_unknown_type():
    with pytest.raises(RecurrenceError):
        compute_delay(make_task(type="weekly"), datetime(2024, 1, 15, tzinfo=UTC))


def test_compute_delay_bad_cron_raises():
    with pytest.raises(RecurrenceError):
        compute_delay(make_task(type="cron", cron_expression="not-a-cron"))


def test_schedule_diagnostics():
    assert schedule_diagnostics(make_task(type="interval", interval_value="1h")) == []
    assert schedule_diagnostics(make_task(type="daily", daily_time="06:00")) == []
    assert schedule_diagnostics(make_task(type="cron", cron_expression="0 * * * *")) == []

    assert "every 1 minute" in schedule_diagnostics(make_task(type="interval", interval_value="2h"))[0]
    assert "every 24 hours" in schedule_diagnostics(make_task(type="daily", daily_time="6am"))[0]
    assert "not be scheduled" in schedule_diagnostics(make_task(type="cron", cron_expression="x"))[0]


def test_describe_schedule():
    assert describe_schedule(make_task(type="interval", interval_value="15m")) == "every 15 minutes"
    assert describe_schedule(make_task(type="daily", daily_time="07:45")) == "daily at 07:45"
    assert describe_schedule(make_task(type="cron", cron_expression="0 0 * * 0")) == "cron: 0 0 * * 0"
    assert describe_schedule(make_task(type="weekly")) == "unknown"


def test_non_string_rule_values_do_not_raise():
    now = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)

    assert interval_delay(["1m"]) == MINUTE_MS
    assert compute_delay(make_task(type="daily", daily_time=900), now) == DAY_MS
    assert "every 24 hours" in schedule_diagnostics(make_task(type="daily", daily_time=900))[0]
    assert "every 1 minute" in schedule_diagnostics(make_task(interval_value=["1m"]))[0]
    assert "not be scheduled" in schedule_diagnostics(make_task(type="cron", cron_expression=5))[0]
    assert describe_schedule(make_task(interval_value=["1m"])) == "['1m']"
