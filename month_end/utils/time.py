"""Time utilities (UTC now, month arithmetic, elapsed days)."""
from __future__ import annotations
import re
from datetime import date, datetime, timezone, timedelta

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def is_valid_month(target_month: str) -> bool:
    return bool(MONTH_PATTERN.match(target_month or ""))

def previous_month(now: datetime) -> str:
    first = now.date().replace(day=1)
    last_of_prev = first - timedelta(days=1)
    return f"{last_of_prev.year:04d}-{last_of_prev.month:02d}"

def month_end_date(target_month: str) -> date:
    """Last calendar day of a ``YYYY-MM`` month."""
    year, month = (int(p) for p in target_month.split("-"))
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - timedelta(days=1)

def elapsed_days(start: datetime, end: datetime) -> int:
    return max(0, (end - start).days)

__all__ = [
    "utc_now",
    "ensure_utc",
    "is_valid_month",
    "previous_month",
    "month_end_date",
    "elapsed_days",
]
