from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.app.core import events as ev
from booking_engine.app.core.errors import (
    NotFoundError,
    TransientStoreError,
    ValidationError,
    is_transient_db_error,
)
from booking_engine.app.domain.models import (
    ACTIVE_STATUSES,
    Booking,
    BookingSource,
    BookingStatus,
    Calendar,
    can_transition,
    normalize_booking_status,
)
from booking_engine.app.domain.scheduling import AvailabilityRuleSet, CalendarConfig, Interval, make_interval
from booking_engine.app.services.calendar_services import CalendarRepo
from booking_engine.app.services.conflict_guard import ConflictGuard, commit_or_conflict, load_booked_index
from booking_engine.app.services.slot_services import (
    SlotSequence,
    generate_slots,
    is_generated_slot,
    is_within_open_window,
    utc_now,
)
from booking_engine.config import (
    get_default_timezone,
    get_initial_status,
    get_max_slot_range_days,
    get_page_size,
    get_slot_step_minutes,
    get_store_retry_attempts,
    get_token_cancel_statuses,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = [
    "AttendeeInfo",
    "ContactResolver",
    "NullContactResolver",
    "BookingRepo",
    "BookingLifecycle",
    "new_cancellation_token",
]

DEFAULT_ATTENDEE_CANCEL_REASON = "Cancelled by attendee"


@dataclass(frozen=True)
class AttendeeInfo:
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class ContactResolver(Protocol):
    """Finds or creates the CRM contact for an attendee (contacts are owned elsewhere)."""

    async def resolve(self, organization_id: int, attendee: AttendeeInfo) -> int | None: ...


class NullContactResolver:
    async def resolve(self, organization_id: int, attendee: AttendeeInfo) -> int | None:
        return None


def new_cancellation_token() -> str:
    return secrets.token_hex(32)


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError("invalid_timezone") from e


def _local_day_bounds(config: CalendarConfig, start_day: date, end_day: date) -> tuple[datetime, datetime]:
    tz = config.tz
    lo = datetime.combine(start_day, time.min, tzinfo=tz).astimezone(UTC)
    hi = datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=tz).astimezone(UTC)
    return lo, hi


class BookingRepo:
    """Booking reads. Writes go through BookingLifecycle."""

    @staticmethod
    async def get(session: AsyncSession, booking_id: int, organization_id: int | None = None) -> Booking:
        row = await session.get(Booking, int(booking_id))
        if row is None or (organization_id is not None and int(row.organization_id) != int(organization_id)):
            raise NotFoundError("booking_not_found")
        return row

    @staticmethod
    async def get_by_token(session: AsyncSession, slug: str, token: str) -> Booking | None:
        """Resolve a cancellation token within its own calendar slug only."""
        return await session.scalar(
            select(Booking)
            .join(Calendar, Calendar.id == Booking.calendar_id)
            .where(Calendar.slug == str(slug), Booking.cancellation_token == str(token))
        )

    @staticmethod
    async def list(
        session: AsyncSession,
        organization_id: int,
        *,
        calendar_id: int | None = None,
        contact_id: int | None = None,
        status: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        page: int = 1,
        limit: int | None = None,
        timezone: str | None = None,
    ) -> tuple[list[Booking], int]:
        """Return one page of an organization's bookings and the total match count.

        ``start_date``/``end_date`` are local days in ``timezone``, else in the
        filtered calendar's timezone, else in the default timezone.
        """
        conds = [Booking.organization_id == int(organization_id)]
        if calendar_id is not None:
            conds.append(Booking.calendar_id == int(calendar_id))
        if contact_id is not None:
            conds.append(Booking.contact_id == int(contact_id))
        if status:
            st = normalize_booking_status(status)
            if st is None:
                raise ValidationError("invalid_status")
            conds.append(Booking.status == st)
        if start_date is not None or end_date is not None:
            if timezone:
                tz = _zone(timezone)
            elif calendar_id is not None:
                tz = _zone((await CalendarRepo.get(session, calendar_id, organization_id)).timezone or "UTC")
            else:
                tz = get_default_timezone()
            if start_date is not None:
                lo = datetime.combine(start_date, time.min, tzinfo=tz).astimezone(UTC)
                conds.append(Booking.start_time >= lo)
            if end_date is not None:
                hi = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=tz).astimezone(UTC)
                conds.append(Booking.start_time < hi)

        size = get_page_size(limit)
        page = max(1, int(page or 1))
        total = int(await session.scalar(select(func.count(Booking.id)).where(*conds)) or 0)
        rows = (
            await session.execute(
                select(Booking)
                .where(*conds)
                .order_by(Booking.start_time.desc(), Booking.id.desc())
                .offset((page - 1) * size)
                .limit(size)
            )
        ).scalars().all()
        return list(rows), total


class BookingLifecycle:
    """Booking state machine on top of ConflictGuard.

    Every write that occupies time runs its full check-and-write inside
    ``guard.hold(calendar_id)``; a ``TransientStoreError`` repeats the whole
    unit up to ``store_retry_attempts`` times. Events go out after commit.
    """

    def __init__(
        self,
        guard: ConflictGuard | None = None,
        events: ev.EventSink | None = None,
        contacts: ContactResolver | None = None,
        clock: Callable[[], datetime] | None = None,
        step_minutes: int | None = None,
    ) -> None:
        self.guard = guard or ConflictGuard()
        self.events = events if events is not None else ev.LoggingEventSink()
        self.contacts = contacts or NullContactResolver()
        self.clock = clock or utc_now
        self._step_minutes = step_minutes

    @property
    def step_minutes(self) -> int:
        if self._step_minutes is not None:
            return self._step_minutes
        return get_slot_step_minutes()

    # ---------------- helpers ----------------

    async def _run_with_retry(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        attempts = get_store_retry_attempts()
        last: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except TransientStoreError as e:
                last = e
            except DBAPIError as e:
                if not is_transient_db_error(e):
                    raise
                last = e
            logger.warning("%s hit a transient store error (attempt %s/%s): %s", op, attempt, attempts, last)
        raise TransientStoreError("store_busy") from last

    def _emit(self, name: str, booking: Booking, *, old: Interval | None = None, reason: str | None = None) -> None:
        payload: dict[str, Any] = {
            "event_id": uuid.uuid4().hex,
            "booking_id": booking.id,
            "organization_id": booking.organization_id,
            "calendar_id": booking.calendar_id,
            "contact_id": booking.contact_id,
            "status": booking.status.value,
            "source": booking.source.value,
            "old_interval": _interval_dict(old) if old is not None else None,
            "new_interval": {"start": booking.start_time.isoformat(), "end": booking.end_time.isoformat()},
            "reason": reason,
            "occurred_at": self.clock().isoformat(),
        }
        ev.emit_safely(self.events, name, payload)

    @staticmethod
    def _build_interval(
        config: CalendarConfig, start: datetime, end: datetime | None, tz_name: str | None
    ) -> Interval:
        """Naive inputs are read in ``tz_name`` (or the calendar zone)."""
        if not isinstance(start, datetime) or (end is not None and not isinstance(end, datetime)):
            raise ValidationError("invalid_time")
        zone = _zone(tz_name) if tz_name else config.tz
        if start.tzinfo is None:
            start = start.replace(tzinfo=zone)
        if end is None:
            end = start + config.duration
        elif end.tzinfo is None:
            end = end.replace(tzinfo=zone)
        if end <= start:
            raise ValidationError("end_before_start")
        return make_interval(start, end)

    def _check_rules(
        self,
        config: CalendarConfig,
        rules: AvailabilityRuleSet,
        interval: Interval,
        source: BookingSource,
    ) -> None:
        if not config.is_active:
            raise ValidationError("calendar_inactive")
        now = self.clock()
        if interval.start < config.earliest_start(now):
            raise ValidationError("insufficient_notice")
        if interval.start > config.latest_start(now):
            raise ValidationError("beyond_booking_horizon")
        if source is BookingSource.BOOKING_PAGE:
            if not is_generated_slot(config, rules, interval, self.step_minutes):
                raise ValidationError("not_a_bookable_slot")
        elif not is_within_open_window(config, rules, interval):
            raise ValidationError("outside_availability")

    async def _load_rules_for(
        self, session: AsyncSession, config: CalendarConfig, interval: Interval
    ) -> AvailabilityRuleSet:
        d = interval.start.astimezone(config.tz).date()
        return await CalendarRepo.load_rules(session, config.id, d, d)

    async def _resolve_contact(self, organization_id: int, attendee: AttendeeInfo) -> int | None:
        if not (attendee.email or attendee.phone):
            return None
        try:
            return await self.contacts.resolve(int(organization_id), attendee)
        except Exception as e:
            # a missing contact link never blocks the booking
            logger.warning("Could not resolve contact for %s in org %s: %s", attendee.email, organization_id, e)
            return None

    # ---------------- slots ----------------

    async def get_slots(
        self,
        calendar_id: int,
        start_date: date,
        end_date: date | None = None,
        organization_id: int | None = None,
    ) -> SlotSequence:
        async with self.guard.open_session() as session:
            config = await CalendarRepo.get_config(session, calendar_id, organization_id)
            return await self._slots_for(session, config, start_date, end_date)

    async def get_slots_for_slug(self, slug: str, start_date: date, end_date: date | None = None) -> SlotSequence:
        async with self.guard.open_session() as session:
            config = await CalendarRepo.get_config_by_slug(session, slug)
            return await self._slots_for(session, config, start_date, end_date)

    async def _slots_for(
        self, session: AsyncSession, config: CalendarConfig, start_date: date, end_date: date | None
    ) -> SlotSequence:
        end_date = end_date or start_date
        if end_date < start_date:
            raise ValidationError("invalid_date_range")
        if (end_date - start_date).days + 1 > get_max_slot_range_days():
            raise ValidationError("date_range_too_large")
        if not config.is_active:
            return generate_slots(config, AvailabilityRuleSet(), (), start_date, end_date, now=self.clock())
        rules = await CalendarRepo.load_rules(session, config.id, start_date, end_date)
        lo, hi = _local_day_bounds(config, start_date, end_date)
        booked = await load_booked_index(session, config, lo, hi)
        return generate_slots(
            config, rules, booked, start_date, end_date, now=self.clock(), step_minutes=self.step_minutes
        )

    # ---------------- create ----------------

    async def create(
        self,
        calendar_id: int,
        start: datetime,
        end: datetime | None = None,
        attendee: AttendeeInfo | None = None,
        *,
        organization_id: int | None = None,
        source: BookingSource | str = BookingSource.MANUAL,
        timezone: str | None = None,
        contact_id: int | None = None,
        title: str | None = None,
        notes: str | None = None,
        internal_notes: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
        assigned_to: int | None = None,
    ) -> Booking:
        """Reserve ``[start, end)`` on a calendar and persist the booking."""
        source = BookingSource(source)
        attendee = attendee or AttendeeInfo()
        async with self.guard.open_session() as session:
            config = await CalendarRepo.get_config(session, calendar_id, organization_id)
        return await self._create(
            config,
            start,
            end,
            attendee,
            source=source,
            timezone=timezone,
            contact_id=contact_id,
            title=title,
            notes=notes,
            internal_notes=internal_notes,
            custom_fields=custom_fields,
            assigned_to=assigned_to,
        )

    async def create_for_slug(
        self,
        slug: str,
        start: datetime,
        attendee: AttendeeInfo,
        *,
        end: datetime | None = None,
        timezone: str | None = None,
        notes: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
    ) -> Booking:
        """Public booking page submission."""
        if not (attendee.name and attendee.name.strip()) or not (attendee.email and attendee.email.strip()):
            raise ValidationError("attendee_name_and_email_required")
        async with self.guard.open_session() as session:
            config = await CalendarRepo.get_config_by_slug(session, slug)
        return await self._create(
            config,
            start,
            end,
            attendee,
            source=BookingSource.BOOKING_PAGE,
            timezone=timezone,
            notes=notes,
            custom_fields=custom_fields,
        )

    async def _create(
        self,
        config: CalendarConfig,
        start: datetime,
        end: datetime | None,
        attendee: AttendeeInfo,
        *,
        source: BookingSource,
        timezone: str | None = None,
        contact_id: int | None = None,
        title: str | None = None,
        notes: str | None = None,
        internal_notes: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
        assigned_to: int | None = None,
    ) -> Booking:
        interval = self._build_interval(config, start, end, timezone)
        display_tz = timezone or config.timezone or get_default_timezone().key
        if contact_id is None:
            contact_id = await self._resolve_contact(config.organization_id, attendee)
        status = BookingStatus(get_initial_status(source.value))

        async def attempt() -> Booking:
            async with self.guard.hold(config.id) as session:
                rules = await self._load_rules_for(session, config, interval)
                self._check_rules(config, rules, interval, source)
                await self.guard.try_reserve(session, config, interval)
                booking = Booking(
                    organization_id=config.organization_id,
                    calendar_id=config.id,
                    contact_id=contact_id,
                    title=title,
                    start_time=interval.start,
                    end_time=interval.end,
                    timezone=display_tz,
                    attendee_name=attendee.name,
                    attendee_email=attendee.email,
                    attendee_phone=attendee.phone,
                    assigned_to=assigned_to if assigned_to is not None else config.assigned_to,
                    status=status,
                    cancellation_token=new_cancellation_token(),
                    notes=notes,
                    internal_notes=internal_notes,
                    custom_fields=dict(custom_fields or {}),
                    source=source,
                )
                session.add(booking)
                await commit_or_conflict(session)
                return booking

        booking = await self._run_with_retry("create", attempt)
        logger.info(
            "Booking %s created on calendar %s: %s..%s (%s, %s)",
            booking.id,
            config.id,
            interval.start.isoformat(),
            interval.end.isoformat(),
            source.value,
            status.value,
        )
        self._emit(ev.BOOKING_CREATED, booking)
        return booking

    # ---------------- status changes ----------------

    async def confirm(self, booking_id: int, organization_id: int | None = None) -> Booking:
        async with self.guard.open_session() as session:
            booking = await BookingRepo.get(session, booking_id, organization_id)
            if not can_transition(booking.status, BookingStatus.CONFIRMED):
                raise ValidationError("invalid_status_transition")
            if booking.status is BookingStatus.CONFIRMED:
                return booking
            res = await session.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.status == BookingStatus.PENDING)
                .values(status=BookingStatus.CONFIRMED, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                await session.rollback()
                raise NotFoundError("booking_not_found_or_already_cancelled")
            await session.commit()
            await session.refresh(booking)
        logger.info("Booking %s confirmed", booking.id)
        self._emit(ev.BOOKING_CONFIRMED, booking)
        return booking

    async def _cancel_row(
        self, session: AsyncSession, booking: Booking, reason: str | None, allowed: frozenset[BookingStatus]
    ) -> Booking:
        now = self.clock()
        res = await session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status.in_(list(allowed)))
            .values(
                status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            await session.rollback()
            raise NotFoundError("booking_not_found_or_already_cancelled")
        await session.commit()
        await session.refresh(booking)
        return booking

    async def cancel(self, booking_id: int, reason: str | None = None, organization_id: int | None = None) -> Booking:
        """Cancel by id; a second cancel of the same booking is NotFoundError."""
        async with self.guard.open_session() as session:
            booking = await BookingRepo.get(session, booking_id, organization_id)
            booking = await self._cancel_row(session, booking, reason, ACTIVE_STATUSES)
        logger.info("Booking %s cancelled (reason=%s)", booking.id, reason)
        self._emit(ev.BOOKING_CANCELLED, booking, reason=reason)
        return booking

    async def cancel_by_token(self, slug: str, token: str, reason: str | None = None) -> Booking:
        """Attendee cancellation; the token only works under its own calendar slug."""
        reason = reason or DEFAULT_ATTENDEE_CANCEL_REASON
        allowed = frozenset(BookingStatus(s) for s in get_token_cancel_statuses())
        async with self.guard.open_session() as session:
            booking = await BookingRepo.get_by_token(session, slug, token)
            if booking is None:
                raise NotFoundError("booking_not_found_or_already_cancelled")
            booking = await self._cancel_row(session, booking, reason, allowed)
        logger.info("Booking %s cancelled by attendee token", booking.id)
        self._emit(ev.BOOKING_CANCELLED, booking, reason=reason)
        return booking

    # ---------------- reschedule ----------------

    async def reschedule(
        self,
        booking_id: int,
        start: datetime,
        end: datetime | None = None,
        timezone: str | None = None,
        organization_id: int | None = None,
    ) -> Booking:
        """Move an active booking; on conflict the stored interval is untouched."""
        async with self.guard.open_session() as session:
            current = await BookingRepo.get(session, booking_id, organization_id)
            if current.status not in ACTIVE_STATUSES:
                raise NotFoundError("booking_not_found_or_already_cancelled")
            calendar_id = current.calendar_id
            config = await CalendarRepo.get_config(session, calendar_id)
        interval = self._build_interval(config, start, end, timezone)

        async def attempt() -> tuple[Booking, Interval]:
            async with self.guard.hold(calendar_id) as session:
                booking = await BookingRepo.get(session, booking_id, organization_id)
                if booking.status not in ACTIVE_STATUSES:
                    raise NotFoundError("booking_not_found_or_already_cancelled")
                old = Interval(booking.start_time, booking.end_time)
                rules = await self._load_rules_for(session, config, interval)
                self._check_rules(config, rules, interval, BookingSource.MANUAL)
                await self.guard.try_reserve(session, config, interval, exclude_booking_id=booking.id)
                booking.start_time = interval.start
                booking.end_time = interval.end
                if timezone:
                    booking.timezone = timezone
                await commit_or_conflict(session)
                return booking, old

        booking, old = await self._run_with_retry("reschedule", attempt)
        logger.info(
            "Booking %s rescheduled %s -> %s",
            booking.id,
            old.start.isoformat(),
            booking.start_time.isoformat(),
        )
        self._emit(ev.BOOKING_RESCHEDULED, booking, old=old)
        return booking


def _interval_dict(iv: Interval) -> dict[str, str]:
    return {"start": iv.start.isoformat(), "end": iv.end.isoformat()}
