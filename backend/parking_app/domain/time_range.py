from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .errors import InvalidRangeError


@dataclass(frozen=True, order=True)
class TimeRange:
    """Half-open interval ``[start, end)``.

    Two ranges that merely touch (one ends exactly when the other starts)
    do not overlap.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise InvalidRangeError(f"start must be earlier than end ({self.start} >= {self.end})")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def intersection(self, other: "TimeRange") -> Optional["TimeRange"]:
        if not self.overlaps(other):
            return None
        return TimeRange(max(self.start, other.start), min(self.end, other.end))

    def with_end(self, end: datetime) -> "TimeRange":
        return TimeRange(self.start, end)


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    return a.overlaps(b)


def contains(time_range: TimeRange, instant: datetime) -> bool:
    return time_range.contains(instant)
