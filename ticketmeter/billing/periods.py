"""Calendar-month billing periods.

A period is identified by a ``YYYY-MM`` key and covers the half-open UTC
interval ``[first instant of the month, first instant of the next month)``.
Every aggregation takes its period explicitly; nothing here reads the
clock except :func:`current_period`, which only callers at the edge
(routes, worker jobs) use.
"""

from __future__ import annotations

import calendar
import re
from datetime import UTC, datetime

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def _parse(period: str) -> tuple[int, int]:
    match = _PERIOD_RE.match(period)
    if not match:
        msg = f"Invalid period key {period!r}; expected YYYY-MM"
        raise ValueError(msg)
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        msg = f"Invalid month in period key {period!r}"
        raise ValueError(msg)
    return year, month


def validate_period(period: str) -> str:
    """Return the key unchanged, raising ValueError if it is malformed."""
    _parse(period)
    return period


def period_key(moment: datetime) -> str:
    """Return the YYYY-MM key of the period containing ``moment``."""
    return f"{moment.year:04d}-{moment.month:02d}"


def current_period() -> str:
    return period_key(datetime.now(UTC))


def shift_period(period: str, months: int) -> str:
    """Return the key ``months`` periods after (or before, if negative) ``period``."""
    year, month = _parse(period)
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def previous_period(period: str) -> str:
    return shift_period(period, -1)


def period_bounds(period: str) -> tuple[datetime, datetime]:
    """Return naive UTC ``(start, end)`` with ``end`` exclusive."""
    year, month = _parse(period)
    start = datetime(year, month, 1)
    next_year, next_month = _parse(shift_period(period, 1))
    return start, datetime(next_year, next_month, 1)


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    index = moment.year * 12 + (moment.month - 1) + months
    year, month = index // 12, index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def months_between(start: datetime, end: datetime) -> float:
    """Fractional months between two instants using the mean month length."""
    return (end - start).total_seconds() / (30.44 * 86400)
