"""
Runtime bootstrap helpers.

Provides an idempotent demo calendar so a fresh database has something to
book against. Tests patch `get_session` via monkeypatch; we therefore
import it lazily.
"""

from sqlalchemy import select

from booking_engine.app.core.constants import _env_bool
from booking_engine.app.domain import models

__all__ = ["init_demo_calendar", "demo_calendar_slug"]


def demo_calendar_slug(organization_id: int) -> str:
    return f"demo-{int(organization_id)}"


def _bootstrap_enabled() -> bool:
    return _env_bool("RUN_BOOTSTRAP")


async def init_demo_calendar(organization_id: int | None = None, *, force: bool = False) -> int | None:
    """Create the demo calendar with Mon-Fri 09:00-17:00 windows (idempotent).

    Returns the calendar id, or None when bootstrap is disabled.
    """
    from booking_engine.app.core.db import get_session  # lazy: tests patch it
    from booking_engine.app.services.calendar_services import CalendarRepo

    # Off unless RUN_BOOTSTRAP is set
    if not force and not _bootstrap_enabled():
        return None

    if organization_id is None:
        from booking_engine.app.core.constants import DEMO_ORGANIZATION_ID

        organization_id = DEMO_ORGANIZATION_ID or 1

    async with get_session() as session:
        existing = await session.scalar(
            select(models.Calendar.id).where(
                models.Calendar.organization_id == int(organization_id),
                models.Calendar.slug == demo_calendar_slug(organization_id),
            )
        )
        if existing:
            return int(existing)
        cal = await CalendarRepo.create_calendar(
            session,
            int(organization_id),
            "Demo calendar",
            slug=demo_calendar_slug(organization_id),
            description="Seeded by RUN_BOOTSTRAP",
        )
        await session.commit()
        return int(cal.id)
