import asyncio
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo
from itertools import combinations

import pytest
from sqlalchemy import select

from booking_engine.app.core.errors import (
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from booking_engine.app.core.events import CallbackEventSink
from booking_engine.app.domain.models import Booking, BookingSource, BookingStatus
from booking_engine.app.services.booking_services import AttendeeInfo, BookingLifecycle, BookingRepo
from booking_engine.app.services.conflict_guard import ConflictGuard
from conftest import MONDAY, NOW, at

ALICE = AttendeeInfo("Alice Doe", "alice@example.com", None)


async def _active_bookings(session_factory, calendar_id):
    async with session_factory() as session:
        rows = await session.execute(
            select(Booking).where(
                Booking.calendar_id == calendar_id,
                Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
            )
        )
        return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_manual_booking_removes_slot(lifecycle, make_calendar, sink):
    cal_id = await make_calendar()
    before = (await lifecycle.get_slots(cal_id, MONDAY)).to_list()
    assert [s.start for s in before] == [at(9), at(10), at(11)]

    booking = await lifecycle.create(cal_id, at(10), at(11), ALICE)
    assert booking.status is BookingStatus.CONFIRMED
    assert booking.source is BookingSource.MANUAL
    assert len(booking.cancellation_token) == 64

    after = (await lifecycle.get_slots(cal_id, MONDAY)).to_list()
    assert [s.start for s in after] == [at(9), at(11)]
    assert sink.names() == ["booking_created"]
    name, payload = sink.events[0]
    assert payload["booking_id"] == booking.id
    assert payload["calendar_id"] == cal_id
    assert payload["organization_id"] == 1
    assert payload["new_interval"]["start"] == at(10).isoformat()
    assert payload["old_interval"] is None


@pytest.mark.asyncio
async def test_end_defaults_to_duration(lifecycle, make_calendar):
    cal_id = await make_calendar()
    booking = await lifecycle.create(cal_id, at(9), None, ALICE)
    assert booking.end_time == at(10)


@pytest.mark.asyncio
async def test_two_simultaneous_creates_one_wins(lifecycle, make_calendar, session_factory):
    cal_id = await make_calendar()
    results = await asyncio.gather(
        lifecycle.create(cal_id, at(10), at(11), ALICE),
        lifecycle.create(cal_id, at(10), at(11), AttendeeInfo("Bob", "bob@example.com")),
        return_exceptions=True,
    )
    winners = [r for r in results if isinstance(r, Booking)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert len(await _active_bookings(session_factory, cal_id)) == 1


@pytest.mark.asyncio
async def test_separate_engines_in_one_process_share_the_calendar_lock(make_calendar, session_factory, sink):
    cal_id = await make_calendar()
    first = BookingLifecycle(guard=ConflictGuard(session_factory), events=sink, clock=lambda: NOW)
    second = BookingLifecycle(guard=ConflictGuard(session_factory), events=sink, clock=lambda: NOW)
    assert first.guard is not second.guard

    results = await asyncio.gather(
        first.create(cal_id, at(10), at(11), ALICE),
        second.create(cal_id, at(10), at(11), AttendeeInfo("Bob", "bob@example.com")),
        return_exceptions=True,
    )
    assert sorted(type(r).__name__ for r in results) == ["Booking", "ConflictError"]
    assert len(await _active_bookings(session_factory, cal_id)) == 1


@pytest.mark.asyncio
async def test_concurrent_writers_never_overlap(lifecycle, make_calendar, session_factory):
    cal_id = await make_calendar()
    starts = [at(9), at(9, 30), at(10), at(10, 15), at(10, 30), at(11), at(9), at(10, 45)]
    await asyncio.gather(
        *(lifecycle.create(cal_id, s, s + timedelta(minutes=60) if s < at(11) else None, ALICE) for s in starts),
        return_exceptions=True,
    )
    rows = await _active_bookings(session_factory, cal_id)
    assert rows
    for a, b in combinations(rows, 2):
        assert not (a.start_time < b.end_time and b.start_time < a.end_time)


@pytest.mark.asyncio
async def test_buffers_guard_manual_bookings(lifecycle, make_calendar):
    cal_id = await make_calendar(duration_minutes=30, buffer_before_minutes=10, buffer_after_minutes=10)
    await lifecycle.create(cal_id, at(10), at(10, 30), ALICE)
    with pytest.raises(ConflictError):
        await lifecycle.create(cal_id, at(10, 35), at(11, 5), ALICE)
    ok = await lifecycle.create(cal_id, at(10, 50), at(11, 20), ALICE)
    assert ok.start_time == at(10, 50)


@pytest.mark.asyncio
async def test_public_booking_must_match_a_slot(lifecycle, make_calendar):
    await make_calendar(slug="alpha")
    with pytest.raises(ValidationError) as exc:
        await lifecycle.create_for_slug("alpha", at(9, 30), ALICE)
    assert exc.value.code == "not_a_bookable_slot"

    booking = await lifecycle.create_for_slug("alpha", at(9), ALICE)
    assert booking.status is BookingStatus.PENDING
    assert booking.source is BookingSource.BOOKING_PAGE
    assert booking.end_time == at(10)


@pytest.mark.asyncio
async def test_public_booking_requires_name_and_email(lifecycle, make_calendar):
    await make_calendar(slug="alpha")
    with pytest.raises(ValidationError):
        await lifecycle.create_for_slug("alpha", at(9), AttendeeInfo("Alice", None))


@pytest.mark.asyncio
async def test_manual_booking_outside_window_is_rejected(lifecycle, make_calendar):
    cal_id = await make_calendar()
    with pytest.raises(ValidationError) as exc:
        await lifecycle.create(cal_id, at(11, 30), at(12, 30), ALICE)
    assert exc.value.code == "outside_availability"


@pytest.mark.asyncio
async def test_notice_and_horizon_are_enforced(session_factory, make_calendar, sink):
    cal_id = await make_calendar(min_notice_hours=2, max_future_days=3)
    lc = BookingLifecycle(guard=ConflictGuard(session_factory), events=sink, clock=lambda: at(8))
    with pytest.raises(ValidationError) as exc:
        await lc.create(cal_id, at(9), at(10), ALICE)
    assert exc.value.code == "insufficient_notice"

    lc_early = BookingLifecycle(guard=ConflictGuard(session_factory), events=sink, clock=lambda: NOW)
    with pytest.raises(ValidationError) as exc:
        await lc_early.create(cal_id, at(9), at(10), ALICE)
    assert exc.value.code == "beyond_booking_horizon"


@pytest.mark.asyncio
async def test_inactive_calendar(lifecycle, make_calendar):
    cal_id = await make_calendar(slug="closed", is_active=False)
    with pytest.raises(ValidationError) as exc:
        await lifecycle.create(cal_id, at(9), at(10), ALICE)
    assert exc.value.code == "calendar_inactive"
    with pytest.raises(NotFoundError):
        await lifecycle.create_for_slug("closed", at(9), ALICE)
    assert (await lifecycle.get_slots(cal_id, MONDAY)).to_list() == []


@pytest.mark.asyncio
async def test_other_organization_cannot_see_calendar(lifecycle, make_calendar):
    cal_id = await make_calendar(organization_id=1)
    with pytest.raises(NotFoundError):
        await lifecycle.create(cal_id, at(9), at(10), ALICE, organization_id=2)


@pytest.mark.asyncio
async def test_cancel_frees_the_slot_and_second_cancel_is_not_found(lifecycle, make_calendar, sink):
    cal_id = await make_calendar()
    booking = await lifecycle.create(cal_id, at(10), at(11), ALICE)
    cancelled = await lifecycle.cancel(booking.id, "client asked")
    assert cancelled.status is BookingStatus.CANCELLED
    assert cancelled.cancellation_reason == "client asked"
    assert cancelled.cancelled_at is not None

    with pytest.raises(NotFoundError):
        await lifecycle.cancel(booking.id)

    again = await lifecycle.create(cal_id, at(10), at(11), ALICE)
    assert again.id != booking.id
    assert sink.names() == ["booking_created", "booking_cancelled", "booking_created"]


@pytest.mark.asyncio
async def test_cancellation_token_is_scoped_to_its_slug(lifecycle, make_calendar):
    await make_calendar(slug="alpha")
    await make_calendar(slug="beta")
    booking = await lifecycle.create_for_slug("alpha", at(9), ALICE)

    with pytest.raises(NotFoundError):
        await lifecycle.cancel_by_token("beta", booking.cancellation_token)
    with pytest.raises(NotFoundError):
        await lifecycle.cancel_by_token("alpha", "0" * 64)

    cancelled = await lifecycle.cancel_by_token("alpha", booking.cancellation_token)
    assert cancelled.status is BookingStatus.CANCELLED
    assert cancelled.cancellation_reason == "Cancelled by attendee"

    with pytest.raises(NotFoundError):
        await lifecycle.cancel_by_token("alpha", booking.cancellation_token)


@pytest.mark.asyncio
async def test_token_policy_limits_cancellable_statuses(lifecycle, make_calendar, monkeypatch):
    from booking_engine import config

    monkeypatch.setitem(config.SETTINGS, "token_cancel_statuses", ["confirmed"])
    await make_calendar(slug="alpha")
    booking = await lifecycle.create_for_slug("alpha", at(9), ALICE)
    assert booking.status is BookingStatus.PENDING
    with pytest.raises(NotFoundError):
        await lifecycle.cancel_by_token("alpha", booking.cancellation_token)

    await lifecycle.confirm(booking.id)
    cancelled = await lifecycle.cancel_by_token("alpha", booking.cancellation_token)
    assert cancelled.status is BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_confirm_transitions(lifecycle, make_calendar, sink):
    await make_calendar(slug="alpha")
    booking = await lifecycle.create_for_slug("alpha", at(9), ALICE)
    confirmed = await lifecycle.confirm(booking.id)
    assert confirmed.status is BookingStatus.CONFIRMED
    assert "booking_confirmed" in sink.names()

    await lifecycle.cancel(booking.id)
    with pytest.raises(ValidationError):
        await lifecycle.confirm(booking.id)


@pytest.mark.asyncio
async def test_reschedule_conflict_leaves_original(lifecycle, make_calendar, session_factory):
    cal_id = await make_calendar()
    first = await lifecycle.create(cal_id, at(9), at(10), ALICE)
    await lifecycle.create(cal_id, at(10), at(11), ALICE)

    with pytest.raises(ConflictError):
        await lifecycle.reschedule(first.id, at(10), at(11))

    async with session_factory() as session:
        stored = await BookingRepo.get(session, first.id)
    assert (stored.start_time, stored.end_time) == (at(9), at(10))
    assert stored.status is BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_reschedule_ignores_own_interval(lifecycle, make_calendar, sink):
    cal_id = await make_calendar()
    booking = await lifecycle.create(cal_id, at(9), at(10), ALICE)
    moved = await lifecycle.reschedule(booking.id, at(9, 30), at(10, 30))
    assert (moved.start_time, moved.end_time) == (at(9, 30), at(10, 30))

    name, payload = sink.events[-1]
    assert name == "booking_rescheduled"
    assert payload["old_interval"] == {"start": at(9).isoformat(), "end": at(10).isoformat()}
    assert payload["new_interval"] == {"start": at(9, 30).isoformat(), "end": at(10, 30).isoformat()}


@pytest.mark.asyncio
async def test_reschedule_cancelled_booking_is_not_found(lifecycle, make_calendar):
    cal_id = await make_calendar()
    booking = await lifecycle.create(cal_id, at(9), at(10), ALICE)
    await lifecycle.cancel(booking.id)
    with pytest.raises(NotFoundError):
        await lifecycle.reschedule(booking.id, at(11), at(12))


@pytest.mark.asyncio
async def test_concurrent_reschedules_into_same_slot(lifecycle, make_calendar, session_factory):
    cal_id = await make_calendar()
    a = await lifecycle.create(cal_id, at(9), at(10), ALICE)
    b = await lifecycle.create(cal_id, at(10), at(11), ALICE)
    results = await asyncio.gather(
        lifecycle.reschedule(a.id, at(11), at(12)),
        lifecycle.reschedule(b.id, at(11), at(12)),
        return_exceptions=True,
    )
    assert sum(isinstance(r, ConflictError) for r in results) == 1
    rows = await _active_bookings(session_factory, cal_id)
    for x, y in combinations(rows, 2):
        assert not (x.start_time < y.end_time and y.start_time < x.end_time)


@pytest.mark.asyncio
async def test_failing_event_sink_does_not_roll_back(session_factory, make_calendar):
    def boom(name, payload):
        raise RuntimeError("sink down")

    lc = BookingLifecycle(guard=ConflictGuard(session_factory), events=CallbackEventSink(boom), clock=lambda: NOW)
    cal_id = await make_calendar()
    booking = await lc.create(cal_id, at(9), at(10), ALICE)
    rows = await _active_bookings(session_factory, cal_id)
    assert [r.id for r in rows] == [booking.id]


@pytest.mark.asyncio
async def test_async_event_sink_is_scheduled(session_factory, make_calendar):
    seen = []

    async def deliver(name, payload):
        seen.append(name)

    lc = BookingLifecycle(guard=ConflictGuard(session_factory), events=CallbackEventSink(deliver), clock=lambda: NOW)
    cal_id = await make_calendar()
    await lc.create(cal_id, at(9), at(10), ALICE)
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert seen == ["booking_created"]


class _FlakyGuard(ConflictGuard):
    def __init__(self, session_factory, failures):
        super().__init__(session_factory)
        self.failures = failures
        self.calls = 0

    async def try_reserve(self, session, config, interval, exclude_booking_id=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientStoreError("store_busy")
        return await super().try_reserve(session, config, interval, exclude_booking_id)


@pytest.mark.asyncio
async def test_transient_error_is_retried_once(session_factory, make_calendar, sink):
    guard = _FlakyGuard(session_factory, failures=1)
    lc = BookingLifecycle(guard=guard, events=sink, clock=lambda: NOW)
    cal_id = await make_calendar()
    booking = await lc.create(cal_id, at(9), at(10), ALICE)
    assert booking.id is not None
    assert guard.calls == 2


@pytest.mark.asyncio
async def test_persistent_transient_error_surfaces(session_factory, make_calendar, sink):
    guard = _FlakyGuard(session_factory, failures=10)
    lc = BookingLifecycle(guard=guard, events=sink, clock=lambda: NOW)
    cal_id = await make_calendar()
    with pytest.raises(TransientStoreError):
        await lc.create(cal_id, at(9), at(10), ALICE)
    assert guard.calls == 2
    assert await _active_bookings(session_factory, cal_id) == []
    assert sink.events == []


@pytest.mark.asyncio
async def test_contact_resolver_links_and_failures_are_tolerated(session_factory, make_calendar, sink):
    class Resolver:
        async def resolve(self, organization_id, attendee):
            if attendee.email == "broken@example.com":
                raise RuntimeError("crm down")
            return 42

    lc = BookingLifecycle(guard=ConflictGuard(session_factory), events=sink, contacts=Resolver(), clock=lambda: NOW)
    await make_calendar(slug="alpha")
    linked = await lc.create_for_slug("alpha", at(9), ALICE)
    assert linked.contact_id == 42
    unlinked = await lc.create_for_slug("alpha", at(10), AttendeeInfo("Eve", "broken@example.com"))
    assert unlinked.contact_id is None


@pytest.mark.asyncio
async def test_list_bookings_filters_and_paginates(lifecycle, make_calendar, session_factory):
    cal_id = await make_calendar()
    for hh in (9, 10, 11):
        await lifecycle.create(cal_id, at(hh), at(hh + 1), ALICE)
    first = (await _active_bookings(session_factory, cal_id))[0]
    await lifecycle.cancel(first.id)

    async with session_factory() as session:
        rows, total = await BookingRepo.list(session, 1, calendar_id=cal_id, limit=2)
        assert total == 3
        assert len(rows) == 2
        rows, total = await BookingRepo.list(session, 1, status="cancelled")
        assert total == 1 and rows[0].id == first.id
        rows, total = await BookingRepo.list(session, 2)
        assert total == 0
        with pytest.raises(ValidationError):
            await BookingRepo.list(session, 1, status="no-show")


@pytest.mark.asyncio
async def test_list_date_filter_uses_the_calendar_timezone(lifecycle, make_calendar, session_factory):
    # Monday 20:00 in New York is already Tuesday 01:00 UTC
    cal_id = await make_calendar("nyc", timezone="America/New_York", windows=((1, time(19), time(22)),))
    evening = datetime(2030, 1, 7, 20, 0, tzinfo=ZoneInfo("America/New_York"))
    booking = await lifecycle.create(cal_id, evening, None, ALICE)
    tuesday = MONDAY + timedelta(days=1)

    async with session_factory() as session:
        rows, total = await BookingRepo.list(session, 1, calendar_id=cal_id, start_date=MONDAY, end_date=MONDAY)
        assert total == 1 and rows[0].id == booking.id
        _, total = await BookingRepo.list(session, 1, calendar_id=cal_id, start_date=tuesday, end_date=tuesday)
        assert total == 0
        _, total = await BookingRepo.list(session, 1, start_date=tuesday, end_date=tuesday, timezone="UTC")
        assert total == 1
        with pytest.raises(ValidationError):
            await BookingRepo.list(session, 1, start_date=MONDAY, timezone="Mars/Olympus")
