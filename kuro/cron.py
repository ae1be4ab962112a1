"""Cron expression evaluation for standard 5-field crontab schedules.

Fields: minute hour day_of_month month day_of_week (0=Sunday).

Examples:
    "*/5 * * * *"   -> every 5 minutes
    "0 16 * * 1-5"  -> weekdays at 4pm
    "0 9,17 * * *"  -> 9am and 5pm daily
"""

from __future__ import annotations

import time
import zoneinfo
from dataclasses import dataclass
from datetime import datetime

from croniter import croniter

from kuro.config import settings


class InvalidExpression(ValueError):
    """The cron expression cannot be evaluated."""


@dataclass(frozen=True)
class CronPreset:
    label: str
    expression: str
    description: str


CRON_PRESETS: tuple[CronPreset, ...] = (
    CronPreset("Every minute", "* * * * *", "Runs every minute"),
    CronPreset("Every 5 minutes", "*/5 * * * *", "Runs every 5 minutes"),
    CronPreset("Every 10 minutes", "*/10 * * * *", "Runs every 10 minutes"),
    CronPreset("Every 15 minutes", "*/15 * * * *", "Runs every 15 minutes"),
    CronPreset("Every 30 minutes", "*/30 * * * *", "Runs every 30 minutes"),
    CronPreset("Every hour", "0 * * * *", "Runs at the start of every hour"),
    CronPreset("Every 6 hours", "0 */6 * * *", "Runs every 6 hours"),
    CronPreset("Every 12 hours", "0 */12 * * *", "Runs every 12 hours"),
    CronPreset("Daily at midnight", "0 0 * * *", "Runs every day at 00:00"),
    CronPreset("Daily at noon", "0 12 * * *", "Runs every day at 12:00"),
    CronPreset("Weekly (Monday)", "0 0 * * 1", "Runs every Monday at 00:00"),
    CronPreset("Monthly (1st day)", "0 0 1 * *", "Runs on the 1st day of every month at 00:00"),
)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_DAYS = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


@dataclass(frozen=True)
class CronValidation:
    valid: bool
    error: str | None = None
    next_run: int | None = None


def _iterator(expression: str, reference: int, timezone: str | None) -> croniter:
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidExpression(
            f"Invalid cron expression (need 5 fields, got {len(fields)}): {expression!r}"
        )
    tz = zoneinfo.ZoneInfo(timezone or settings.scheduler_timezone)
    start = datetime.fromtimestamp(reference, tz=tz)
    try:
        return croniter(" ".join(fields), start)
    except (ValueError, KeyError) as exc:
        raise InvalidExpression(f"Invalid cron expression {expression!r}: {exc}") from exc


def next_fire_time(
    expression: str,
    reference: int | None = None,
    timezone: str | None = None,
) -> int:
    """Return the first fire time strictly after *reference* (epoch seconds).

    Raises:
        InvalidExpression: if the expression is not a valid 5-field crontab.
    """
    ref = int(time.time()) if reference is None else int(reference)
    itr = _iterator(expression, ref, timezone)
    try:
        fire = int(itr.get_next(float))
        while fire <= ref:
            fire = int(itr.get_next(float))
    except (ValueError, KeyError) as exc:
        raise InvalidExpression(f"Invalid cron expression {expression!r}: {exc}") from exc
    return fire


def validate_cron_expression(expression: str) -> CronValidation:
    """Check an expression, returning its next fire time when valid."""
    try:
        return CronValidation(valid=True, next_run=next_fire_time(expression))
    except InvalidExpression as exc:
        return CronValidation(valid=False, error=str(exc))


def get_next_runs(expression: str, count: int = 5, reference: int | None = None) -> list[int]:
    """Return the next *count* fire times, or an empty list if invalid."""
    runs: list[int] = []
    ref = int(time.time()) if reference is None else int(reference)
    try:
        for _ in range(count):
            ref = next_fire_time(expression, ref)
            runs.append(ref)
    except InvalidExpression:
        return []
    return runs


def describe_cron_expression(expression: str) -> str:
    """Return a short human-readable description of an expression."""
    for preset in CRON_PRESETS:
        if preset.expression == expression:
            return preset.description

    parts = expression.split()
    if len(parts) != 5:
        return "Custom schedule"
    minute, hour, day_of_month, month, day_of_week = parts

    if minute == "*":
        description = "Runs every minute"
    elif minute.startswith("*/"):
        description = f"Runs every {minute[2:]} minutes"
    else:
        description = f"Runs at minute {minute}"

    if hour != "*":
        if hour.startswith("*/"):
            description += f" of every {hour[2:]} hours"
        else:
            description += f" of hour {hour}"

    if day_of_month != "*":
        description += f" on day {day_of_month}"

    if month != "*" and month.isdigit() and 1 <= int(month) <= 12:
        description += f" in {_MONTHS[int(month) - 1]}"

    if day_of_week != "*" and day_of_week.isdigit() and 0 <= int(day_of_week) <= 6:
        description += f" on {_DAYS[int(day_of_week)]}"

    return description


def format_next_run(timestamp: int, now: int | None = None) -> str:
    """Render a fire time relative to *now*, e.g. ``"in 5 minutes"``."""
    current = int(time.time()) if now is None else now
    diff = timestamp - current
    if diff < 0:
        return "Overdue"

    minutes, seconds = diff // 60, diff
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"in {days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"in {hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"in {minutes} minute{'s' if minutes > 1 else ''}"
    return f"in {seconds} second{'s' if seconds != 1 else ''}"
