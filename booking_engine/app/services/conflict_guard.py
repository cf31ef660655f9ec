"""Per-calendar check-and-write serialization.

Every write that makes an interval active (create, reschedule) runs inside
``ConflictGuard.hold(calendar_id)``:

    * a process-wide ``asyncio.Lock`` per calendar (``calendar_lock``)
      serializes every writer in this process, whatever guard it uses;
    * on PostgreSQL ``pg_advisory_xact_lock(namespace, calendar_id)`` extends
      that to every process and is released by the commit/rollback;
    * the ``bookings_no_overlap`` exclusion constraint (migrations) rejects a
      raw overlap that slips past both (buffers are not part of it); the
      IntegrityError becomes ConflictError.

The overlap decision is ``BookedIntervalIndex.conflicts``, the same
predicate the slot generator filters with.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.app.core import db
from booking_engine.app.core.errors import ConflictError, TransientStoreError, is_transient_db_error
from booking_engine.app.domain.models import ACTIVE_STATUSES, Booking
from booking_engine.app.domain.scheduling import BookedIntervalIndex, CalendarConfig, Interval
from booking_engine.config import get_setting

logger = logging.getLogger(__name__)

__all__ = ["Reservation", "ConflictGuard", "calendar_lock", "load_booked_index", "commit_or_conflict"]

_INT4_MAX = 2147483647

# One lock per calendar per event loop, shared by every ConflictGuard in the process
_CALENDAR_LOCKS: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


def calendar_lock(calendar_id: int) -> asyncio.Lock:
    """Process-wide write lock for ``calendar_id`` on the running loop."""
    loop = asyncio.get_running_loop()
    locks = _CALENDAR_LOCKS.get(loop)
    if locks is None:
        locks = _CALENDAR_LOCKS[loop] = {}
    lock = locks.get(int(calendar_id))
    if lock is None:
        lock = locks[int(calendar_id)] = asyncio.Lock()
    return lock


@dataclass(frozen=True)
class Reservation:
    """Proof that ``interval`` was free on ``calendar_id`` while the lock was held."""

    calendar_id: int
    interval: Interval
    exclude_booking_id: int | None = None


async def load_booked_index(
    session: AsyncSession,
    config: CalendarConfig,
    start: datetime,
    end: datetime,
    exclude_booking_id: int | None = None,
) -> BookedIntervalIndex:
    """Active booking intervals whose padded extent can reach ``[start, end)``."""
    pad = config.buffer_before + config.buffer_after
    stmt = select(Booking.start_time, Booking.end_time).where(
        Booking.calendar_id == int(config.id),
        Booking.status.in_(list(ACTIVE_STATUSES)),
        Booking.start_time < end + pad,
        Booking.end_time > start - pad,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != int(exclude_booking_id))
    rows = (await session.execute(stmt)).all()
    return BookedIntervalIndex(Interval(s, e) for s, e in rows if e > s)


async def commit_or_conflict(session: AsyncSession) -> None:
    """Commit; an exclusion/unique violation becomes ConflictError."""
    try:
        await session.commit()
    except IntegrityError as ie:
        await session.rollback()
        logger.info("IntegrityError on commit (interval likely taken): %s", ie.orig)
        raise ConflictError("slot_unavailable") from ie
    except DBAPIError as e:
        await session.rollback()
        if is_transient_db_error(e):
            raise TransientStoreError("store_busy") from e
        raise


class ConflictGuard:
    """Serializes check-and-write per calendar.

    Locks come from the module registry (``calendar_lock``), so separate
    guards in one process still exclude each other.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        lock_namespace: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_namespace = lock_namespace

    def open_session(self):
        """Session context for reads that need no lock."""
        if self._session_factory is not None:
            return self._session_factory()
        return db.get_session()

    async def _acquire_store_lock(self, session: AsyncSession, calendar_id: int) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        namespace = self._lock_namespace
        if namespace is None:
            namespace = int(get_setting("advisory_lock_namespace", 7341))
        try:
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:ns, :cal)"),
                {"ns": int(namespace) % _INT4_MAX, "cal": int(calendar_id) % _INT4_MAX},
            )
        except DBAPIError as e:
            if is_transient_db_error(e):
                raise TransientStoreError("store_busy") from e
            raise

    @asynccontextmanager
    async def hold(self, calendar_id: int) -> AsyncIterator[AsyncSession]:
        """Yield a session that owns the calendar's write lock until it commits.

        The body must commit (``commit_or_conflict``) before leaving; anything
        left uncommitted is rolled back.
        """
        async with calendar_lock(calendar_id):
            async with self.open_session() as session:
                try:
                    await self._acquire_store_lock(session, int(calendar_id))
                    yield session
                except BaseException:
                    await session.rollback()
                    raise

    async def try_reserve(
        self,
        session: AsyncSession,
        config: CalendarConfig,
        interval: Interval,
        exclude_booking_id: int | None = None,
    ) -> Reservation:
        """Raise ConflictError unless ``interval`` is free; call inside ``hold``."""
        booked = await load_booked_index(session, config, interval.start, interval.end, exclude_booking_id)
        if booked.conflicts(interval, config.buffer_before, config.buffer_after):
            logger.info(
                "Conflict on calendar %s for %s..%s (exclude=%s)",
                config.id,
                interval.start.isoformat(),
                interval.end.isoformat(),
                exclude_booking_id,
            )
            raise ConflictError("slot_unavailable")
        return Reservation(int(config.id), interval, exclude_booking_id)
