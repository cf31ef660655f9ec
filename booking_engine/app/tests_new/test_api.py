from datetime import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from booking_engine.api.app import app, get_lifecycle, issue_jwt
from booking_engine.app.domain.models import AvailabilityWindow, Base, Calendar
from booking_engine.app.services.booking_services import BookingLifecycle
from booking_engine.app.services.conflict_guard import ConflictGuard
from booking_engine.config import SETTINGS
from conftest import NOW, RecordingSink

SECRET = "test-secret-that-is-long-enough-for-hs256"


def _seed(path) -> None:
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    with Session(engine) as s:
        for org, slug in ((1, "alpha"), (2, "other")):
            cal = Calendar(
                organization_id=org,
                name=slug.title(),
                slug=slug,
                timezone="UTC",
                duration_minutes=60,
                min_notice_hours=0,
                max_future_days=60,
            )
            s.add(cal)
            s.flush()
            s.add(AvailabilityWindow(calendar_id=cal.id, day_of_week=1, start_time=time(9), end_time=time(12)))
        s.commit()
    engine.dispose()


@pytest.fixture
def client(tmp_path, monkeypatch):
    path = tmp_path / "api.db"
    _seed(path)
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    lifecycle = BookingLifecycle(
        guard=ConflictGuard(async_sessionmaker(engine, expire_on_commit=False)),
        events=RecordingSink(),
        clock=lambda: NOW,
    )
    monkeypatch.setitem(SETTINGS, "jwt_secret", SECRET)
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _auth(org: int = 1) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_jwt(7, org)}"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_staff_routes_require_bearer_token(client):
    assert client.get("/api/bookings").status_code == 401
    resp = client.get("/api/bookings", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_public_calendar_and_slots(client):
    info = client.get("/api/public/book/alpha").json()
    assert info["slug"] == "alpha"
    assert info["availability"] == [{"day_of_week": 1, "start_time": "09:00", "end_time": "12:00"}]

    resp = client.get("/api/public/book/alpha/slots", params={"start_date": "2030-01-07"})
    assert resp.status_code == 200
    starts = [s["start"] for s in resp.json()["slots"]]
    assert starts == [
        "2030-01-07T09:00:00+00:00",
        "2030-01-07T10:00:00+00:00",
        "2030-01-07T11:00:00+00:00",
    ]


def test_unknown_slug_is_404(client):
    resp = client.get("/api/public/book/missing/slots", params={"start_date": "2030-01-07"})
    assert resp.status_code == 404
    assert resp.json() == {"error": "calendar_not_found"}


def test_public_booking_then_conflict_then_token_cancel(client):
    body = {
        "start_time": "2030-01-07T10:00:00Z",
        "attendee_name": "Alice Doe",
        "attendee_email": "alice@example.com",
    }
    resp = client.post("/api/public/book/alpha", json=body)
    assert resp.status_code == 201
    booking = resp.json()["booking"]
    assert booking["status"] == "pending"
    assert booking["end_time"] == "2030-01-07T11:00:00+00:00"
    token = booking["cancellation_token"]

    dup = client.post("/api/public/book/alpha", json=body)
    assert dup.status_code == 409
    assert dup.json() == {"error": "slot_unavailable"}

    starts = [s["start"] for s in client.get("/api/public/book/alpha/slots", params={"start_date": "2030-01-07"}).json()["slots"]]
    assert "2030-01-07T10:00:00+00:00" not in starts

    assert client.post(f"/api/public/book/other/cancel/{token}").status_code == 404
    ok = client.post(f"/api/public/book/alpha/cancel/{token}", json={"reason": "plans changed"})
    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert client.post(f"/api/public/book/alpha/cancel/{token}").status_code == 404


def test_public_booking_off_grid_is_422(client):
    resp = client.post(
        "/api/public/book/alpha",
        json={"start_time": "2030-01-07T09:30:00Z", "attendee_name": "A", "attendee_email": "a@example.com"},
    )
    assert resp.status_code == 422
    assert resp.json() == {"error": "not_a_bookable_slot"}


def test_staff_booking_lifecycle(client):
    headers = _auth()
    created = client.post(
        "/api/bookings",
        json={"calendar_id": 1, "start_time": "2030-01-07T09:00:00Z", "end_time": "2030-01-07T10:00:00Z", "title": "Intro"},
        headers=headers,
    )
    assert created.status_code == 201
    first = created.json()
    assert first["status"] == "confirmed"
    assert first["source"] == "manual"

    second = client.post(
        "/api/bookings",
        json={"calendar_id": 1, "start_time": "2030-01-07T10:00:00Z"},
        headers=headers,
    ).json()

    clash = client.patch(
        f"/api/bookings/{first['id']}/reschedule",
        json={"start_time": "2030-01-07T10:00:00Z", "end_time": "2030-01-07T11:00:00Z"},
        headers=headers,
    )
    assert clash.status_code == 409
    assert client.get(f"/api/bookings/{first['id']}", headers=headers).json()["start_time"] == "2030-01-07T09:00:00+00:00"

    moved = client.patch(
        f"/api/bookings/{first['id']}/reschedule",
        json={"start_time": "2030-01-07T11:00:00Z"},
        headers=headers,
    )
    assert moved.status_code == 200
    assert moved.json()["end_time"] == "2030-01-07T12:00:00+00:00"

    cancelled = client.patch(f"/api/bookings/{second['id']}/cancel", json={"reason": "no longer needed"}, headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.patch(f"/api/bookings/{second['id']}/cancel", headers=headers).status_code == 404

    listing = client.get("/api/bookings", params={"status": "confirmed"}, headers=headers).json()
    assert listing["total"] == 1
    assert listing["bookings"][0]["id"] == first["id"]


def test_staff_confirm_pending_public_booking(client):
    booking = client.post(
        "/api/public/book/alpha",
        json={"start_time": "2030-01-07T11:00:00Z", "attendee_name": "Bo", "attendee_email": "bo@example.com"},
    ).json()["booking"]
    resp = client.patch(f"/api/bookings/{booking['id']}/confirm", headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["status"] == "confirmed"


def test_staff_is_scoped_to_organization(client):
    resp = client.get("/api/calendars/1/slots", params={"start_date": "2030-01-07"}, headers=_auth(org=2))
    assert resp.status_code == 404
    resp = client.post(
        "/api/bookings",
        json={"calendar_id": 1, "start_time": "2030-01-07T09:00:00Z"},
        headers=_auth(org=2),
    )
    assert resp.status_code == 404


def test_slot_range_validation(client):
    resp = client.get(
        "/api/calendars/1/slots",
        params={"start_date": "2030-01-08", "end_date": "2030-01-07"},
        headers=_auth(),
    )
    assert resp.status_code == 422
    assert resp.json() == {"error": "invalid_date_range"}


def test_availability_and_date_overrides(client):
    headers = _auth()
    resp = client.put(
        "/api/calendars/1/availability",
        json={"availability": [{"day_of_week": 1, "start_time": "13:00", "end_time": "15:00"}]},
        headers=headers,
    )
    assert resp.status_code == 200
    slots = client.get("/api/calendars/1/slots", params={"start_date": "2030-01-07"}, headers=headers).json()["slots"]
    assert [s["start"] for s in slots] == ["2030-01-07T13:00:00+00:00", "2030-01-07T14:00:00+00:00"]

    override = client.post(
        "/api/calendars/1/date-override",
        json={"override_date": "2030-01-07", "is_available": False, "reason": "holiday"},
        headers=headers,
    )
    assert override.status_code == 200
    assert client.get("/api/calendars/1/slots", params={"start_date": "2030-01-07"}, headers=headers).json()["slots"] == []

    # same date again updates the one override row
    again = client.post(
        "/api/calendars/1/date-override",
        json={"override_date": "2030-01-07", "is_available": True, "start_time": "16:00", "end_time": "17:00"},
        headers=headers,
    )
    assert again.json()["id"] == override.json()["id"]
    slots = client.get("/api/calendars/1/slots", params={"start_date": "2030-01-07"}, headers=headers).json()["slots"]
    assert [s["start"] for s in slots] == ["2030-01-07T16:00:00+00:00"]

    deleted = client.delete(f"/api/calendars/1/date-override/{override.json()['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.delete(f"/api/calendars/1/date-override/{override.json()['id']}", headers=headers).status_code == 404
