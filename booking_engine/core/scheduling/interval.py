"""Half-open time intervals."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass(frozen=True)
class Interval:
    """Time interval [start, end)."""

    start: datetime
    end: datetime

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "Interval":
        """Build an interval of `minutes` length beginning at `start`."""
        return cls.of_length(start, timedelta(minutes=minutes))

    @classmethod
    def of_length(cls, start: datetime, length: timedelta) -> "Interval":
        """Build an interval lasting `length` of elapsed time from `start`.

        Zoned datetimes add in wall-clock time, so both endpoints are
        expressed in UTC and a span crossing a DST change keeps its length.
        """
        start = start.astimezone(timezone.utc)
        return cls(start, start + length)

    @property
    def duration(self) -> timedelta:
        return self.end.astimezone(timezone.utc) - self.start.astimezone(timezone.utc)

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self, other)

    def contains(self, point: datetime) -> bool:
        return contains(self, point)

    def covers(self, other: "Interval") -> bool:
        """Check that `other` lies entirely within this interval."""
        return self.start <= other.start and other.end <= self.end


def overlaps(a: Interval, b: Interval) -> bool:
    """Check overlap; touching endpoints do not overlap."""
    return a.start < b.end and b.start < a.end


def contains(window: Interval, point: datetime) -> bool:
    """Check that `point` falls inside `window`."""
    return window.start <= point < window.end
