"""Test configuration.

Adds the repository root to sys.path so `import booking_engine` works in CI
where the checkout directory may not be on PYTHONPATH by default, and
provides a throwaway SQLite database per test.
"""

from __future__ import annotations

import sys
from datetime import UTC, datetime, time
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from booking_engine.app.domain.models import Base  # noqa: E402
from booking_engine.app.services.booking_services import BookingLifecycle  # noqa: E402
from booking_engine.app.services.calendar_services import CalendarRepo  # noqa: E402
from booking_engine.app.services.conflict_guard import ConflictGuard  # noqa: E402

# 2030-01-01 is a Tuesday; 2030-01-07 is the following Monday
NOW = datetime(2030, 1, 1, 0, 0, tzinfo=UTC)
MONDAY = datetime(2030, 1, 7, tzinfo=UTC).date()
MONDAY_WINDOW = (1, time(9, 0), time(12, 0))


def at(hh: int, mm: int = 0, day=MONDAY) -> datetime:
    return datetime(day.year, day.month, day.day, hh, mm, tzinfo=UTC)


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def emit(self, event_name, payload):
        self.events.append((event_name, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def lifecycle(session_factory, sink) -> BookingLifecycle:
    return BookingLifecycle(guard=ConflictGuard(session_factory), events=sink, clock=lambda: NOW)


@pytest.fixture
def make_calendar(session_factory):
    """Insert a calendar (UTC, 60m, Monday 09:00-12:00 unless told otherwise)."""

    async def _make(slug: str = "alpha", organization_id: int = 1, windows=(MONDAY_WINDOW,), **settings):
        params = {
            "timezone": "UTC",
            "duration_minutes": 60,
            "min_notice_hours": 0,
            "max_future_days": 60,
        }
        params.update(settings)
        async with session_factory() as session:
            cal = await CalendarRepo.create_calendar(
                session, organization_id, slug.title(), slug=slug, windows=windows, **params
            )
            await session.commit()
            return cal.id

    return _make
