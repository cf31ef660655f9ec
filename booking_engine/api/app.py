"""FastAPI facade for the booking engine.

Staff routes (``/api/bookings``, ``/api/calendars``) need a Bearer JWT that
carries ``user_id`` and ``organization_id``; everything they touch is scoped
to that organization. Public booking page routes (``/api/public/book``) are
anonymous and only see active calendars.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from booking_engine.app.core.constants import JWT_ALGORITHM
from booking_engine.app.core.errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from booking_engine.app.domain.models import Booking, BookingSource
from booking_engine.app.domain.scheduling import Interval
from booking_engine.app.services.booking_services import AttendeeInfo, BookingLifecycle, BookingRepo
from booking_engine.app.services.calendar_services import CalendarRepo
from booking_engine.config import SETTINGS, get_page_size

logger = logging.getLogger(__name__)

JWT_ALGO = JWT_ALGORITHM


@dataclass(frozen=True)
class Principal:
    user_id: int
    organization_id: int


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class SlotOut(BaseModel):
    start: str
    end: str


class SlotsResponse(BaseModel):
    calendar_id: int
    timezone: str
    duration_minutes: int
    slots: list[SlotOut]


class BookingOut(BaseModel):
    id: int
    organization_id: int
    calendar_id: int
    contact_id: Optional[int] = None
    title: Optional[str] = None
    start_time: str
    end_time: str
    timezone: str
    status: str
    source: str
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None
    attendee_phone: Optional[str] = None
    assigned_to: Optional[int] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancellation_token: Optional[str] = None


class BookingListResponse(BaseModel):
    bookings: list[BookingOut]
    total: int
    page: int
    limit: int


class ManualBookingRequest(BaseModel):
    calendar_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    timezone: Optional[str] = None
    contact_id: Optional[int] = None
    title: Optional[str] = None
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None
    attendee_phone: Optional[str] = None
    assigned_to: Optional[int] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class PublicBookingRequest(BaseModel):
    start_time: datetime
    end_time: Optional[datetime] = None
    timezone: Optional[str] = None
    attendee_name: str = Field(..., min_length=1)
    attendee_email: str = Field(..., min_length=3)
    attendee_phone: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class PublicBookingResponse(BaseModel):
    success: bool = True
    booking: BookingOut
    message: str = "Booking received."


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    start_time: datetime
    end_time: Optional[datetime] = None
    timezone: Optional[str] = None


class WindowIn(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time
    is_active: bool = True


class AvailabilityRequest(BaseModel):
    availability: list[WindowIn]


class WindowOut(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str


class DateOverrideRequest(BaseModel):
    override_date: date
    is_available: bool = False
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = None


class DateOverrideOut(BaseModel):
    id: int
    calendar_id: int
    override_date: str
    is_available: bool
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: Optional[str] = None


class PublicCalendarOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    slug: str
    timezone: str
    duration_minutes: int
    min_notice_hours: int
    max_future_days: int
    color: Optional[str] = None
    availability: list[WindowOut]


# ---------------------------------------------------------------------------
# Error handling helpers
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[BookingError], int] = {
    ValidationError: 422,
    ConflictError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    TransientStoreError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _normalize_error_code(val: str | Exception | None, default: str) -> str:
    """Return a safe error code for frontend without leaking exception text."""
    if val is None:
        return default
    code = str(val).strip().lower()
    if not code:
        return default
    if not all(ch.isalnum() or ch in {"_", "-"} for ch in code):
        return default
    return code[:64]


def _status_for(exc: BookingError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return status.HTTP_400_BAD_REQUEST


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def _jwt_secret() -> str:
    secret = str(SETTINGS.get("jwt_secret") or "")
    if not secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="auth_not_configured")
    return secret


def issue_jwt(user_id: int, organization_id: int) -> str:
    payload = {
        "sub": str(user_id),
        "user_id": int(user_id),
        "organization_id": int(organization_id),
        "exp": datetime.now(UTC) + timedelta(seconds=int(SETTINGS.get("jwt_ttl_seconds", 3600))),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGO)


def _decode_token(token: str) -> Principal:
    try:
        data = jwt.decode(token, _jwt_secret(), algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc

    try:
        return Principal(user_id=int(data["user_id"]), organization_id=int(data["organization_id"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="organization_required") from exc


async def get_current_principal(authorization: str | None = Header(default=None)) -> Principal:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_authorization_header")
    return _decode_token(token)


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------

_lifecycle: BookingLifecycle | None = None


def get_lifecycle() -> BookingLifecycle:
    """Process-wide lifecycle; its guard owns the per-calendar locks."""
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = BookingLifecycle()
    return _lifecycle


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def booking_out(b: Booking, *, with_token: bool = False) -> BookingOut:
    return BookingOut(
        id=b.id,
        organization_id=b.organization_id,
        calendar_id=b.calendar_id,
        contact_id=b.contact_id,
        title=b.title,
        start_time=b.start_time.isoformat(),
        end_time=b.end_time.isoformat(),
        timezone=b.timezone,
        status=b.status.value,
        source=b.source.value,
        attendee_name=b.attendee_name,
        attendee_email=b.attendee_email,
        attendee_phone=b.attendee_phone,
        assigned_to=b.assigned_to,
        notes=b.notes,
        internal_notes=b.internal_notes,
        custom_fields=dict(b.custom_fields or {}),
        cancelled_at=_iso(b.cancelled_at),
        cancellation_reason=b.cancellation_reason,
        cancellation_token=b.cancellation_token if with_token else None,
    )


def _slots_response(calendar_id: int, tz: str, duration: int, slots: list[Interval]) -> SlotsResponse:
    return SlotsResponse(
        calendar_id=calendar_id,
        timezone=tz,
        duration_minutes=duration,
        slots=[SlotOut(start=s.start.isoformat(), end=s.end.isoformat()) for s in slots],
    )


def _hhmm(t: time | None) -> str | None:
    return t.strftime("%H:%M") if t is not None else None


app = FastAPI(title="Booking Engine API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.get("cors_origins") or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    code = _normalize_error_code(exc.code, exc.default_code)
    http_status = _status_for(exc)
    if http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, code)
    return JSONResponse(status_code=http_status, content={"error": code})


# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------


@app.get("/api/calendars/{calendar_id}/slots", response_model=SlotsResponse)
async def calendar_slots(
    calendar_id: int,
    start_date: date = Query(...),
    end_date: Optional[date] = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> SlotsResponse:
    async with lifecycle.guard.open_session() as session:
        config = await CalendarRepo.get_config(session, calendar_id, principal.organization_id)
    slots = await lifecycle.get_slots(calendar_id, start_date, end_date, principal.organization_id)
    return _slots_response(config.id, config.timezone, config.duration_minutes, slots.to_list())


@app.get("/api/public/book/{slug}/slots", response_model=SlotsResponse)
async def public_slots(
    slug: str,
    start_date: date = Query(...),
    end_date: Optional[date] = Query(default=None),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> SlotsResponse:
    async with lifecycle.guard.open_session() as session:
        config = await CalendarRepo.get_config_by_slug(session, slug)
    slots = await lifecycle.get_slots_for_slug(slug, start_date, end_date)
    return _slots_response(config.id, config.timezone, config.duration_minutes, slots.to_list())


# ---------------------------------------------------------------------------
# Public booking page
# ---------------------------------------------------------------------------


@app.get("/api/public/book/{slug}", response_model=PublicCalendarOut)
async def public_calendar(slug: str, lifecycle: BookingLifecycle = Depends(get_lifecycle)) -> PublicCalendarOut:
    async with lifecycle.guard.open_session() as session:
        cal = await CalendarRepo.get_active_by_slug(session, slug)
        windows = await CalendarRepo.list_windows(session, cal.id)
    return PublicCalendarOut(
        id=cal.id,
        name=cal.name,
        description=cal.description,
        slug=cal.slug,
        timezone=cal.timezone,
        duration_minutes=cal.duration_minutes,
        min_notice_hours=cal.min_notice_hours,
        max_future_days=cal.max_future_days,
        color=cal.color,
        availability=[
            WindowOut(day_of_week=w.day_of_week, start_time=_hhmm(w.start_time), end_time=_hhmm(w.end_time))
            for w in windows
        ],
    )


@app.post("/api/public/book/{slug}", response_model=PublicBookingResponse, status_code=status.HTTP_201_CREATED)
async def public_create_booking(
    slug: str,
    payload: PublicBookingRequest,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> PublicBookingResponse:
    booking = await lifecycle.create_for_slug(
        slug,
        payload.start_time,
        AttendeeInfo(payload.attendee_name, payload.attendee_email, payload.attendee_phone),
        end=payload.end_time,
        timezone=payload.timezone,
        notes=payload.notes,
        custom_fields=payload.custom_fields,
    )
    return PublicBookingResponse(booking=booking_out(booking, with_token=True))


@app.post("/api/public/book/{slug}/cancel/{token}")
async def public_cancel_booking(
    slug: str,
    token: str,
    payload: Optional[CancelRequest] = None,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> dict[str, Any]:
    await lifecycle.cancel_by_token(slug, token, payload.reason if payload else None)
    return {"success": True, "message": "Your booking has been cancelled."}


# ---------------------------------------------------------------------------
# Staff bookings
# ---------------------------------------------------------------------------


@app.get("/api/bookings", response_model=BookingListResponse)
async def list_bookings(
    calendar_id: Optional[int] = None,
    contact_id: Optional[int] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    timezone: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingListResponse:
    async with lifecycle.guard.open_session() as session:
        rows, total = await BookingRepo.list(
            session,
            principal.organization_id,
            calendar_id=calendar_id,
            contact_id=contact_id,
            status=status_filter,
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
            timezone=timezone,
        )
    return BookingListResponse(
        bookings=[booking_out(b) for b in rows],
        total=total,
        page=page,
        limit=get_page_size(limit),
    )


@app.get("/api/bookings/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingOut:
    async with lifecycle.guard.open_session() as session:
        booking = await BookingRepo.get(session, booking_id, principal.organization_id)
    return booking_out(booking, with_token=True)


@app.post("/api/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: ManualBookingRequest,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingOut:
    booking = await lifecycle.create(
        payload.calendar_id,
        payload.start_time,
        payload.end_time,
        AttendeeInfo(payload.attendee_name, payload.attendee_email, payload.attendee_phone),
        organization_id=principal.organization_id,
        source=BookingSource.MANUAL,
        timezone=payload.timezone,
        contact_id=payload.contact_id,
        title=payload.title,
        notes=payload.notes,
        internal_notes=payload.internal_notes,
        custom_fields=payload.custom_fields,
        assigned_to=payload.assigned_to,
    )
    return booking_out(booking, with_token=True)


@app.patch("/api/bookings/{booking_id}/confirm", response_model=BookingOut)
async def confirm_booking(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingOut:
    booking = await lifecycle.confirm(booking_id, principal.organization_id)
    return booking_out(booking)


@app.patch("/api/bookings/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: int,
    payload: Optional[CancelRequest] = None,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingOut:
    booking = await lifecycle.cancel(booking_id, payload.reason if payload else None, principal.organization_id)
    return booking_out(booking)


@app.patch("/api/bookings/{booking_id}/reschedule", response_model=BookingOut)
async def reschedule_booking(
    booking_id: int,
    payload: RescheduleRequest,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingOut:
    booking = await lifecycle.reschedule(
        booking_id,
        payload.start_time,
        payload.end_time,
        timezone=payload.timezone,
        organization_id=principal.organization_id,
    )
    return booking_out(booking)


# ---------------------------------------------------------------------------
# Calendar availability settings
# ---------------------------------------------------------------------------


@app.put("/api/calendars/{calendar_id}/availability", response_model=list[WindowOut])
async def replace_availability(
    calendar_id: int,
    payload: AvailabilityRequest,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> list[WindowOut]:
    async with lifecycle.guard.open_session() as session:
        await CalendarRepo.get(session, calendar_id, principal.organization_id)
        rows = await CalendarRepo.replace_windows(session, calendar_id, [w.model_dump() for w in payload.availability])
        await session.commit()
    logger.info("Calendar %s availability replaced (%s windows)", calendar_id, len(rows))
    return [WindowOut(day_of_week=w.day_of_week, start_time=_hhmm(w.start_time), end_time=_hhmm(w.end_time)) for w in rows]


@app.post("/api/calendars/{calendar_id}/date-override", response_model=DateOverrideOut)
async def upsert_date_override(
    calendar_id: int,
    payload: DateOverrideRequest,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> DateOverrideOut:
    async with lifecycle.guard.open_session() as session:
        await CalendarRepo.get(session, calendar_id, principal.organization_id)
        row = await CalendarRepo.upsert_override(
            session,
            calendar_id,
            payload.override_date,
            is_available=payload.is_available,
            start_time=payload.start_time,
            end_time=payload.end_time,
            reason=payload.reason,
        )
        await session.commit()
    return DateOverrideOut(
        id=row.id,
        calendar_id=row.calendar_id,
        override_date=row.override_date.isoformat(),
        is_available=row.is_available,
        start_time=_hhmm(row.start_time),
        end_time=_hhmm(row.end_time),
        reason=row.reason,
    )


@app.delete("/api/calendars/{calendar_id}/date-override/{override_id}")
async def delete_date_override(
    calendar_id: int,
    override_id: int,
    principal: Principal = Depends(get_current_principal),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> dict[str, bool]:
    async with lifecycle.guard.open_session() as session:
        await CalendarRepo.get(session, calendar_id, principal.organization_id)
        await CalendarRepo.delete_override(session, calendar_id, override_id)
        await session.commit()
    return {"success": True}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def get_app() -> FastAPI:
    """Exported factory for uvicorn or tests."""
    return app
