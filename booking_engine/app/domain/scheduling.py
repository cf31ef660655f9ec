"""Scheduling value objects.

Immutable snapshots handed to the slot generator and the conflict guard:
``CalendarConfig`` and ``AvailabilityRuleSet`` are read once per request,
``BookedIntervalIndex`` holds the calendar's active booking intervals.
"""
from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Iterable, Mapping, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open ``[start, end)`` interval of aware UTC instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("interval bounds must be timezone-aware")
        if self.end <= self.start:
            raise ValueError("interval end must be after start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def padded(self, before: timedelta, after: timedelta) -> "Interval":
        return Interval(self.start - before, self.end + after)

    def overlaps(self, other: "Interval") -> bool:
        return intervals_overlap(self.start, self.end, other.start, other.end)


# A slot is just an interval exactly ``duration_minutes`` wide
Slot = Interval


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    """Half-open intersection test shared by slot generation and the guard."""
    return s1 < e2 and s2 < e1


def make_interval(start: datetime, end: datetime) -> Interval:
    """Build an Interval, normalising both bounds to UTC."""
    return Interval(start.astimezone(UTC), end.astimezone(UTC))


@dataclass(frozen=True)
class CalendarConfig:
    id: int
    organization_id: int
    slug: str
    timezone: str
    duration_minutes: int
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    min_notice_hours: int = 0
    max_future_days: int = 60
    is_active: bool = True
    assigned_to: int | None = None

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be > 0")
        if self.buffer_before_minutes < 0 or self.buffer_after_minutes < 0:
            raise ValueError("buffers must be >= 0")
        if self.min_notice_hours < 0:
            raise ValueError("min_notice_hours must be >= 0")
        if self.max_future_days <= 0:
            raise ValueError("max_future_days must be > 0")

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)

    @property
    def buffer_before(self) -> timedelta:
        return timedelta(minutes=self.buffer_before_minutes)

    @property
    def buffer_after(self) -> timedelta:
        return timedelta(minutes=self.buffer_after_minutes)

    def earliest_start(self, now: datetime) -> datetime:
        return now + timedelta(hours=self.min_notice_hours)

    def latest_start(self, now: datetime) -> datetime:
        return now + timedelta(days=self.max_future_days)


@dataclass(frozen=True)
class WeeklyWindow:
    day_of_week: int  # Sunday=0 .. Saturday=6
    start_time: time
    end_time: time
    is_active: bool = True


@dataclass(frozen=True)
class DateOverride:
    override_date: date
    is_available: bool
    start_time: time | None = None
    end_time: time | None = None

    @property
    def has_hours(self) -> bool:
        return self.start_time is not None and self.end_time is not None


def day_of_week(d: date) -> int:
    """Sunday-based weekday number used by availability windows."""
    return d.isoweekday() % 7


@dataclass(frozen=True)
class AvailabilityRuleSet:
    windows: tuple[WeeklyWindow, ...] = ()
    overrides: Mapping[date, DateOverride] = field(default_factory=dict)

    @classmethod
    def build(
        cls, windows: Iterable[WeeklyWindow], overrides: Iterable[DateOverride] = ()
    ) -> "AvailabilityRuleSet":
        by_date: dict[date, DateOverride] = {}
        for ov in overrides:
            # one override per date; a later row wins
            by_date[ov.override_date] = ov
        return cls(windows=tuple(windows), overrides=by_date)

    def raw_windows_for(self, d: date) -> list[tuple[time, time]]:
        """Local (start, end) pairs open on ``d`` before merging.

        An override replaces the recurring rows for its date: a blackout
        yields nothing, special hours yield exactly one window.
        """
        ov = self.overrides.get(d)
        if ov is not None:
            if not ov.is_available:
                return []
            if ov.has_hours:
                return [(ov.start_time, ov.end_time)]  # type: ignore[list-item]
        dow = day_of_week(d)
        return [
            (w.start_time, w.end_time)
            for w in self.windows
            if w.is_active and w.day_of_week == dow
        ]

    def is_blacked_out(self, d: date) -> bool:
        ov = self.overrides.get(d)
        return ov is not None and not ov.is_available


class BookedIntervalIndex:
    """Sorted, read-only view of a calendar's active booking intervals."""

    def __init__(self, intervals: Iterable[Interval] = ()) -> None:
        self._intervals: list[Interval] = sorted(intervals)
        self._starts = [iv.start for iv in self._intervals]
        self._max_len = max((iv.duration for iv in self._intervals), default=timedelta(0))

    def __len__(self) -> int:
        return len(self._intervals)

    def __iter__(self):
        return iter(self._intervals)

    @property
    def intervals(self) -> Sequence[Interval]:
        return tuple(self._intervals)

    def conflicts(self, candidate: Interval, before: timedelta, after: timedelta) -> bool:
        """True when ``candidate`` padded by the buffers meets any padded booking."""
        want = candidate.padded(before, after)
        # any padded booking that could reach want.start starts no earlier than this
        lo = bisect_left(self._starts, want.start - before - after - self._max_len)
        for iv in self._intervals[lo:]:
            padded = iv.padded(before, after)
            if padded.start >= want.end:
                break
            if intervals_overlap(want.start, want.end, padded.start, padded.end):
                return True
        return False


__all__ = [
    "Interval",
    "Slot",
    "intervals_overlap",
    "make_interval",
    "CalendarConfig",
    "WeeklyWindow",
    "DateOverride",
    "AvailabilityRuleSet",
    "BookedIntervalIndex",
    "day_of_week",
]
