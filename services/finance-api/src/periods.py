"""Calendar-month helpers shared by budget listing and spend forecasting."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Tuple

from errors import ValidationError

_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})(?:-(\d{2}))?$")


def first_of_month(value: date) -> date:
    return date(value.year, value.month, 1)


def first_of_next_month(value: date) -> date:
    if value.month == 12:
        return date(value.year + 1, 1, 1)
    return date(value.year, value.month + 1, 1)


def month_bounds(value: date) -> Tuple[date, date]:
    """Half-open [first day, first day of next month) range containing `value`."""
    start = first_of_month(value)
    return start, first_of_next_month(start)


def month_datetime_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    """Same as `month_bounds`, as UTC datetimes for timestamp comparisons."""
    start, end = month_bounds(moment.astimezone(timezone.utc).date() if moment.tzinfo else moment.date())
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.min, tzinfo=timezone.utc),
    )


def parse_month(raw: str | date | datetime) -> date:
    """
    Normalize `YYYY-MM`, `YYYY-MM-DD`, or a date/datetime to the first day of its month.

    Raises ValidationError for anything else.
    """
    if isinstance(raw, datetime):
        return first_of_month(raw.date())
    if isinstance(raw, date):
        return first_of_month(raw)

    match = _MONTH_PATTERN.match((raw or "").strip())
    if not match:
        raise ValidationError(f"Month must look like YYYY-MM (received '{raw}')")
    year, month, day = int(match.group(1)), int(match.group(2)), match.group(3)
    try:
        parsed = date(year, month, int(day) if day else 1)
    except ValueError as exc:
        raise ValidationError(f"Invalid month '{raw}': {exc}") from exc
    return first_of_month(parsed)
