"""Slot generation.

Pure functions: nothing here touches the database. Callers load a
``CalendarConfig``, an ``AvailabilityRuleSet`` and a ``BookedIntervalIndex``
and get back a lazy ``SlotSequence``.

Algorithm per local calendar date:
    1. Open windows come from the date override when one exists (blackout ->
       nothing, special hours -> exactly those hours), otherwise from the
       union of the weekday's recurring windows.
    2. Windows are converted to UTC and merged into disjoint spans. Rows for
       the same day may overlap; walking unmerged rows emits duplicates.
    3. Each span is walked from its start in ``step`` increments emitting
       ``[t, t + duration)`` while it fits.
    4. A slot is dropped when its buffer-padded interval meets a padded
       booking, when it starts before ``now + min_notice_hours`` or after
       ``now + max_future_days``.
"""
from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import Iterable, Iterator, Sequence

from booking_engine.app.domain.scheduling import (
    AvailabilityRuleSet,
    BookedIntervalIndex,
    CalendarConfig,
    Interval,
    Slot,
)

logger = logging.getLogger(__name__)

__all__ = [
    "SlotSequence",
    "generate_slots",
    "merge_spans",
    "open_spans_for_date",
    "slot_grid_for_date",
    "is_generated_slot",
    "is_within_open_window",
    "utc_now",
]


def utc_now() -> datetime:
    """Return current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _local_instant(d: date, t: time, config: CalendarConfig) -> datetime:
    return datetime.combine(d, t, tzinfo=config.tz).astimezone(UTC)


def merge_spans(spans: Iterable[tuple[datetime, datetime]]) -> list[tuple[datetime, datetime]]:
    """Union overlapping or touching spans into a sorted disjoint list."""
    merged: list[tuple[datetime, datetime]] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            last_start, last_end = merged[-1]
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def open_spans_for_date(
    config: CalendarConfig, rules: AvailabilityRuleSet, d: date
) -> list[tuple[datetime, datetime]]:
    """Disjoint UTC spans open for booking on local date ``d``."""
    spans: list[tuple[datetime, datetime]] = []
    for ws, we in rules.raw_windows_for(d):
        if we <= ws:
            logger.debug("Skipping empty/inverted window %s-%s on %s (calendar %s)", ws, we, d, config.id)
            continue
        start = _local_instant(d, ws, config)
        end = _local_instant(d, we, config)
        if end > start:
            spans.append((start, end))
    return merge_spans(spans)


def _step_for(config: CalendarConfig, step_minutes: int | None) -> timedelta:
    if step_minutes and step_minutes > 0:
        return timedelta(minutes=step_minutes)
    return config.duration


def slot_grid_for_date(
    config: CalendarConfig,
    rules: AvailabilityRuleSet,
    d: date,
    step_minutes: int | None = None,
) -> Iterator[Slot]:
    """Every candidate slot of ``d`` before bookings, notice and horizon apply."""
    duration = config.duration
    step = _step_for(config, step_minutes)
    for span_start, span_end in open_spans_for_date(config, rules, d):
        t = span_start
        while t + duration <= span_end:
            yield Interval(t, t + duration)
            t += step


def _to_local_date(value: date | datetime, config: CalendarConfig) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(config.tz).date()
    return value


class SlotSequence:
    """Lazy, restartable, finite sequence of free slots ordered by start.

    Iterating twice walks the rules again from scratch; the inputs are
    immutable so both passes yield the same slots.
    """

    def __init__(
        self,
        config: CalendarConfig,
        rules: AvailabilityRuleSet,
        booked: BookedIntervalIndex,
        range_start: date,
        range_end: date,
        now: datetime,
        step_minutes: int | None = None,
    ) -> None:
        self.config = config
        self.rules = rules
        self.booked = booked
        self.range_start = range_start
        self.range_end = range_end
        self.now = now
        self.step_minutes = step_minutes

    def __iter__(self) -> Iterator[Slot]:
        config = self.config
        earliest = config.earliest_start(self.now)
        latest = config.latest_start(self.now)
        last_day = min(self.range_end, latest.astimezone(config.tz).date())
        before, after = config.buffer_before, config.buffer_after

        d = self.range_start
        while d <= last_day:
            for slot in slot_grid_for_date(config, self.rules, d, self.step_minutes):
                if slot.start < earliest or slot.start > latest:
                    continue
                if self.booked.conflicts(slot, before, after):
                    continue
                yield slot
            d += timedelta(days=1)

    def to_list(self) -> list[Slot]:
        return list(self)


def generate_slots(
    config: CalendarConfig,
    rules: AvailabilityRuleSet,
    booked: BookedIntervalIndex | Sequence[Interval],
    range_start: date | datetime,
    range_end: date | datetime,
    *,
    now: datetime | None = None,
    step_minutes: int | None = None,
) -> SlotSequence:
    """Build the free-slot sequence for ``[range_start, range_end]`` (local dates, inclusive)."""
    if not isinstance(booked, BookedIntervalIndex):
        booked = BookedIntervalIndex(booked)
    start_day = _to_local_date(range_start, config)
    end_day = _to_local_date(range_end, config)
    return SlotSequence(
        config,
        rules,
        booked,
        start_day,
        end_day,
        now or utc_now(),
        step_minutes=step_minutes,
    )


def is_generated_slot(
    config: CalendarConfig,
    rules: AvailabilityRuleSet,
    interval: Interval,
    step_minutes: int | None = None,
) -> bool:
    """True when ``interval`` is exactly one of the grid slots of its local date."""
    if interval.duration != config.duration:
        return False
    d = interval.start.astimezone(config.tz).date()
    return any(slot == interval for slot in slot_grid_for_date(config, rules, d, step_minutes))


def is_within_open_window(config: CalendarConfig, rules: AvailabilityRuleSet, interval: Interval) -> bool:
    """True when ``interval`` fits entirely inside one merged open span."""
    d = interval.start.astimezone(config.tz).date()
    for span_start, span_end in open_spans_for_date(config, rules, d):
        if span_start <= interval.start and interval.end <= span_end:
            return True
    return False
