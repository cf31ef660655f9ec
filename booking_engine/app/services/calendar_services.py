from __future__ import annotations

import logging
import re
import secrets
from datetime import date, time
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.app.core.errors import ConflictError, NotFoundError, ValidationError
from booking_engine.app.domain.models import AvailabilityWindow, Calendar, CalendarDateOverride
from booking_engine.app.domain.scheduling import (
    AvailabilityRuleSet,
    CalendarConfig,
    DateOverride,
    WeeklyWindow,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CalendarRepo",
    "config_from_row",
    "generate_slug",
    "DEFAULT_WEEKLY_WINDOWS",
]

# Mon-Fri 09:00-17:00 (Sunday=0)
DEFAULT_WEEKLY_WINDOWS: tuple[tuple[int, time, time], ...] = tuple(
    (day, time(9, 0), time(17, 0)) for day in range(1, 6)
)


def generate_slug(name: str) -> str:
    """URL-safe slug: lowercase words joined by dashes plus a random suffix.

    Slugs are global (public URLs carry nothing else), so two tenants naming
    a calendar "Consultation" get different slugs.
    """
    base = re.sub(r"[^a-z0-9]+", "-", str(name).strip().lower()).strip("-")
    return f"{(base or 'calendar')[:246]}-{secrets.token_hex(4)}"


def config_from_row(row: Calendar) -> CalendarConfig:
    """Snapshot a Calendar row; bad stored settings surface as ValidationError."""
    try:
        return CalendarConfig(
            id=int(row.id),
            organization_id=int(row.organization_id),
            slug=str(row.slug),
            timezone=str(row.timezone or "UTC"),
            duration_minutes=int(row.duration_minutes or 0),
            buffer_before_minutes=int(row.buffer_before_minutes or 0),
            buffer_after_minutes=int(row.buffer_after_minutes or 0),
            min_notice_hours=int(row.min_notice_hours or 0),
            max_future_days=int(row.max_future_days or 0),
            is_active=bool(row.is_active),
            assigned_to=row.assigned_to,
        )
    except ValueError as e:
        logger.error("Calendar %s has invalid scheduling settings: %s", row.id, e)
        raise ValidationError("calendar_misconfigured") from e


def _parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    try:
        hh, mm = str(value).split(":")[:2]
        return time(hour=int(hh), minute=int(mm))
    except (TypeError, ValueError) as e:
        raise ValidationError("invalid_time") from e


class CalendarRepo:
    """Read access to calendar settings plus the small set of writes the
    calendar settings screens need (weekly windows, date overrides).
    All methods take the caller's session; none of them commit.
    """

    @staticmethod
    async def get(session: AsyncSession, calendar_id: int, organization_id: int | None = None) -> Calendar:
        row = await session.get(Calendar, int(calendar_id))
        if row is None or (organization_id is not None and int(row.organization_id) != int(organization_id)):
            raise NotFoundError("calendar_not_found")
        return row

    @staticmethod
    async def get_config(
        session: AsyncSession, calendar_id: int, organization_id: int | None = None
    ) -> CalendarConfig:
        row = await CalendarRepo.get(session, calendar_id, organization_id)
        return config_from_row(row)

    @staticmethod
    async def get_active_by_slug(session: AsyncSession, slug: str) -> Calendar:
        """Public lookup: inactive calendars are invisible."""
        row = await session.scalar(
            select(Calendar).where(Calendar.slug == str(slug), Calendar.is_active.is_(True))
        )
        if row is None:
            raise NotFoundError("calendar_not_found")
        return row

    @staticmethod
    async def get_config_by_slug(session: AsyncSession, slug: str) -> CalendarConfig:
        return config_from_row(await CalendarRepo.get_active_by_slug(session, slug))

    @staticmethod
    async def list_windows(session: AsyncSession, calendar_id: int, *, active_only: bool = True) -> list[AvailabilityWindow]:
        stmt = select(AvailabilityWindow).where(AvailabilityWindow.calendar_id == int(calendar_id))
        if active_only:
            stmt = stmt.where(AvailabilityWindow.is_active.is_(True))
        stmt = stmt.order_by(AvailabilityWindow.day_of_week, AvailabilityWindow.start_time)
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def list_overrides(
        session: AsyncSession, calendar_id: int, start: date | None = None, end: date | None = None
    ) -> list[CalendarDateOverride]:
        stmt = select(CalendarDateOverride).where(CalendarDateOverride.calendar_id == int(calendar_id))
        if start is not None:
            stmt = stmt.where(CalendarDateOverride.override_date >= start)
        if end is not None:
            stmt = stmt.where(CalendarDateOverride.override_date <= end)
        stmt = stmt.order_by(CalendarDateOverride.override_date)
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def load_rules(
        session: AsyncSession, calendar_id: int, start: date | None = None, end: date | None = None
    ) -> AvailabilityRuleSet:
        """Weekly windows plus the overrides falling in ``[start, end]``."""
        windows = await CalendarRepo.list_windows(session, calendar_id)
        overrides = await CalendarRepo.list_overrides(session, calendar_id, start, end)
        return AvailabilityRuleSet.build(
            (WeeklyWindow(int(w.day_of_week), w.start_time, w.end_time, bool(w.is_active)) for w in windows),
            (
                DateOverride(o.override_date, bool(o.is_available), o.start_time, o.end_time)
                for o in overrides
            ),
        )

    # ---------------- calendar settings writes ----------------

    @staticmethod
    async def create_calendar(
        session: AsyncSession,
        organization_id: int,
        name: str,
        *,
        windows: Iterable[tuple[int, time, time]] | None = None,
        **settings: Any,
    ) -> Calendar:
        """Insert a calendar with its weekly windows (Mon-Fri 9-17 by default)."""
        if not name or not str(name).strip():
            raise ValidationError("calendar_name_required")
        slug = settings.pop("slug", None) or generate_slug(name)
        cal = Calendar(organization_id=int(organization_id), name=str(name).strip(), slug=slug, **settings)
        session.add(cal)
        try:
            await session.flush()
        except IntegrityError as ie:
            await session.rollback()
            logger.info("Calendar slug %r already taken: %s", slug, ie.orig)
            raise ConflictError("slug_taken") from ie
        # reject unusable settings before any window is written
        config_from_row(cal)
        for day, start, end in windows if windows is not None else DEFAULT_WEEKLY_WINDOWS:
            session.add(AvailabilityWindow(calendar_id=cal.id, day_of_week=int(day), start_time=start, end_time=end, is_active=True))
        await session.flush()
        logger.info("Calendar %s (%s) created for organization %s", cal.id, slug, organization_id)
        return cal

    @staticmethod
    async def replace_windows(
        session: AsyncSession, calendar_id: int, windows: Sequence[Mapping[str, Any]]
    ) -> list[AvailabilityWindow]:
        """Replace every weekly window of a calendar."""
        rows: list[AvailabilityWindow] = []
        for w in windows:
            try:
                day = int(w["day_of_week"])
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError("invalid_day_of_week") from e
            if not 0 <= day <= 6:
                raise ValidationError("invalid_day_of_week")
            start = _parse_time(w.get("start_time"))
            end = _parse_time(w.get("end_time"))
            if end <= start:
                raise ValidationError("window_end_before_start")
            rows.append(
                AvailabilityWindow(
                    calendar_id=int(calendar_id),
                    day_of_week=day,
                    start_time=start,
                    end_time=end,
                    is_active=bool(w.get("is_active", True)),
                )
            )
        await session.execute(delete(AvailabilityWindow).where(AvailabilityWindow.calendar_id == int(calendar_id)))
        session.add_all(rows)
        await session.flush()
        return rows

    @staticmethod
    async def upsert_override(
        session: AsyncSession,
        calendar_id: int,
        override_date: date,
        *,
        is_available: bool = False,
        start_time: Any = None,
        end_time: Any = None,
        reason: str | None = None,
    ) -> CalendarDateOverride:
        """Set the single override row for ``(calendar_id, override_date)``."""
        start = _parse_time(start_time) if start_time not in (None, "") else None
        end = _parse_time(end_time) if end_time not in (None, "") else None
        if (start is None) != (end is None):
            raise ValidationError("override_needs_both_times")
        if start is not None and end is not None and end <= start:
            raise ValidationError("window_end_before_start")
        row = await session.scalar(
            select(CalendarDateOverride).where(
                CalendarDateOverride.calendar_id == int(calendar_id),
                CalendarDateOverride.override_date == override_date,
            )
        )
        if row is None:
            row = CalendarDateOverride(calendar_id=int(calendar_id), override_date=override_date)
            session.add(row)
        row.is_available = bool(is_available)
        row.start_time = start if is_available else None
        row.end_time = end if is_available else None
        row.reason = reason
        await session.flush()
        return row

    @staticmethod
    async def delete_override(session: AsyncSession, calendar_id: int, override_id: int) -> None:
        res = await session.execute(
            delete(CalendarDateOverride).where(
                CalendarDateOverride.id == int(override_id),
                CalendarDateOverride.calendar_id == int(calendar_id),
            )
        )
        if not res.rowcount:
            raise NotFoundError("override_not_found")

