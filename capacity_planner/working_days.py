from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Iterator, Optional, Tuple

from dateutil import parser as dateparser

from .errors import DateParseError

ISO_DATE_FMT = "%Y-%m-%d"

# date.weekday() values
WEEKDAY_CODES: Dict[str, int] = {
    "Mon": 0,
    "Tue": 1,
    "Wed": 2,
    "Thu": 3,
    "Fri": 4,
    "Sat": 5,
    "Sun": 6,
}


def _tokens(value: Optional[str]):
    if not value:
        return []
    return [token.strip() for token in value.split(",") if token.strip()]


def parse_working_days(value: Optional[str]) -> FrozenSet[int]:
    """Weekday numbers named in ``value``; unknown tokens are dropped."""
    return frozenset(WEEKDAY_CODES[token] for token in _tokens(value) if token in WEEKDAY_CODES)


def count_working_days(value: Optional[str]) -> int:
    """Number of non-empty tokens in ``value``, recognised or not."""
    return len(_tokens(value))


def unknown_working_day_tokens(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(token for token in _tokens(value) if token not in WEEKDAY_CODES)


def is_working_day(value: date, working_days: FrozenSet[int]) -> bool:
    return value.weekday() in working_days


def parse_iso_date(value: object, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise DateParseError(field_name, value)
    try:
        return dateparser.isoparse(value.strip()).date()
    except (ValueError, OverflowError) as exc:
        raise DateParseError(field_name, value) from exc


def format_iso_date(value: date) -> str:
    return value.strftime(ISO_DATE_FMT)


def inclusive_days(start: date, end: date) -> int:
    return (end - start).days + 1


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def overlap(
    start_a: date, end_a: date, start_b: date, end_b: date
) -> Optional[Tuple[date, date]]:
    """Intersection of two inclusive date ranges, or None when they are disjoint."""
    window_start = max(start_a, start_b)
    window_end = min(end_a, end_b)
    if window_start > window_end:
        return None
    return window_start, window_end


def spans_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    return start_a <= end_b and end_a >= start_b
