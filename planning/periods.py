from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

import pandas as pd


MONTH_ABBRS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

_LABEL_RE = re.compile(r"^([a-z]{3})-(\d{2})$")


@dataclass(frozen=True)
class DateRange:
    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None


def to_date(value: object) -> Optional[date]:
    """Coerce a date-like value (date, datetime, Timestamp, ISO string) to a date."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(ts):
        return None
    return ts.date()


def _short_year(year: int) -> str:
    return f"{year % 100:02d}"


def period_label(value: object) -> str:
    d = to_date(value)
    if d is None:
        raise ValueError(f"Cannot derive a period from {value!r}")
    return f"{MONTH_ABBRS[d.month - 1]}-{_short_year(d.year)}"


def label_for_month_index(index: int, year: int) -> str:
    """Label for a zero-based month index (0=jan ... 11=dec) in a reference year.

    Every month, October through December included, belongs to the calendar
    year it falls in, so this agrees with ``period_label`` for the same date.
    """
    if not 0 <= int(index) <= 11:
        raise ValueError(f"Month index out of range: {index}")
    return f"{MONTH_ABBRS[int(index)]}-{_short_year(int(year))}"


def parse_label(label: str) -> Tuple[int, int]:
    """Parse ``jan-25`` -> (2025, 1)."""
    match = _LABEL_RE.match(str(label).strip().lower())
    if not match or match.group(1) not in MONTH_ABBRS:
        raise ValueError(f"Not a period label: {label!r}")
    yy = int(match.group(2))
    year = yy + (2000 if yy < 50 else 1900)
    return year, MONTH_ABBRS.index(match.group(1)) + 1


def is_label(value: object) -> bool:
    try:
        parse_label(str(value))
    except ValueError:
        return False
    return True


def period_sort_key(label: str) -> Tuple[int, int]:
    return parse_label(label)


def sort_periods(labels: Iterable[str]) -> List[str]:
    return sorted(set(labels), key=period_sort_key)


def planning_year(label: str) -> int:
    # Calendar year for all months, Q4 included.
    return parse_label(label)[0]


def month_start(label: str) -> date:
    year, month = parse_label(label)
    return date(year, month, 1)


def month_end(label: str) -> date:
    start = pd.Timestamp(month_start(label))
    return (start + pd.offsets.MonthEnd(0)).date()


def in_range(value: object, date_range: Optional[DateRange]) -> bool:
    if date_range is None or date_range.is_open:
        return True
    d = to_date(value)
    if d is None:
        return False
    if date_range.start is not None and d < date_range.start:
        return False
    if date_range.end is not None and d > date_range.end:
        return False
    return True


def canonicalize(value: object, date_range: Optional[DateRange] = None) -> Optional[str]:
    """Canonical label for a date, or None when it falls outside the range.

    Raises ValueError when the value is not a date at all.
    """
    label = period_label(value)
    if not in_range(value, date_range):
        return None
    return label


def label_in_range(label: str, date_range: Optional[DateRange]) -> bool:
    """True when any day of the labelled month overlaps the range."""
    if date_range is None or date_range.is_open:
        return True
    if date_range.start is not None and month_end(label) < date_range.start:
        return False
    if date_range.end is not None and month_start(label) > date_range.end:
        return False
    return True


def months_in_range(date_range: DateRange) -> List[str]:
    if date_range.start is None or date_range.end is None:
        raise ValueError("months_in_range needs both ends of the range")
    if date_range.start > date_range.end:
        return []
    stamps = pd.period_range(start=pd.Timestamp(date_range.start), end=pd.Timestamp(date_range.end), freq="M")
    return [label_for_month_index(p.month - 1, p.year) for p in stamps]
