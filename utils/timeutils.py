"""Timestamp parsing and time-window helpers shared by ingestion and metrics."""

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterator, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# Epoch numbers at or above this are treated as milliseconds
# (1e11 seconds is year 5138; 1e11 ms is 1973).
EPOCH_MILLIS_THRESHOLD = 1e11

SECONDS_PER_DAY = 86400

T = TypeVar("T")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Coerce an upstream timestamp into an aware UTC datetime.

    Accepts datetimes, ISO 8601 strings (``Z`` suffix allowed) and epoch
    numbers in seconds or milliseconds. Anything else, including unparseable
    strings and booleans, returns None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        seconds = value / 1000.0 if abs(value) >= EPOCH_MILLIS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None

    return None


def iso_date(value: datetime) -> str:
    """Calendar day (UTC) of a timestamp as YYYY-MM-DD."""
    return ensure_utc(value).date().isoformat()


def format_fetch_time(value: datetime) -> str:
    """Second-precision UTC timestamp with a Z suffix, as the fetch service expects."""
    return ensure_utc(value).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of_day(value: date) -> datetime:
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


class TimeWindow(BaseModel):
    """
    Inclusive [start, end] interval in UTC.

    Store filters use ``gte start`` and ``lte end``, so consecutive windows
    built with ``previous()`` never share an instant.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeWindow":
        if self.end < self.start:
            raise ValueError(
                f"Window end {self.end.isoformat()} is before start {self.start.isoformat()}"
            )
        return self

    @classmethod
    def from_dates(cls, from_date: date, to_date: date) -> "TimeWindow":
        """Window from the start of ``from_date`` to the end of ``to_date``."""
        if isinstance(from_date, datetime):
            from_date = from_date.date()
        if isinstance(to_date, datetime):
            to_date = to_date.date()
        return cls(start=start_of_day(from_date), end=end_of_day(to_date))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def days(self) -> int:
        """Number of (possibly partial) days covered, never less than 1."""
        return max(1, math.ceil(self.duration.total_seconds() / SECONDS_PER_DAY))

    def previous(self) -> "TimeWindow":
        """Window of the same duration ending immediately before this one starts."""
        prev_end = self.start - timedelta(microseconds=1)
        return TimeWindow(start=prev_end - self.duration, end=prev_end)

    def contains(self, value: Optional[datetime]) -> bool:
        if value is None:
            return False
        value = ensure_utc(value)
        return self.start <= value <= self.end

    def iter_dates(self) -> Iterator[str]:
        """Every calendar day touched by the window, as ISO date strings."""
        current = self.start.date()
        last = self.end.date()
        while current <= last:
            yield current.isoformat()
            current += timedelta(days=1)


def dense_series(trend_map: Dict[str, T], window: TimeWindow, zero: T) -> Dict[str, T]:
    """
    Fill a sparse per-day trend map so every day of the window has an entry.

    Days missing from ``trend_map`` get ``zero``. The result is ordered by date.
    """
    return {day: trend_map.get(day, zero) for day in window.iter_dates()}
