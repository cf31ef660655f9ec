from zoneinfo import ZoneInfo

from booking_engine import config


def test_initial_status_follows_source(monkeypatch):
    assert config.get_initial_status("booking_page") == "pending"
    assert config.get_initial_status("manual") == "confirmed"

    monkeypatch.setitem(config.SETTINGS, "public_booking_status", "confirmed")
    assert config.get_initial_status("booking_page") == "confirmed"

    monkeypatch.setitem(config.SETTINGS, "manual_booking_status", "garbage")
    assert config.get_initial_status("manual") == "confirmed"


def test_token_cancel_statuses_ignore_unknown_values(monkeypatch):
    monkeypatch.setitem(config.SETTINGS, "token_cancel_statuses", ["Pending", "cancelled"])
    assert config.get_token_cancel_statuses() == frozenset({"pending"})

    monkeypatch.setitem(config.SETTINGS, "token_cancel_statuses", ["nonsense"])
    assert config.get_token_cancel_statuses() == frozenset({"pending", "confirmed"})


def test_page_size_is_clamped(monkeypatch):
    monkeypatch.setitem(config.SETTINGS, "bookings_page_size", 50)
    monkeypatch.setitem(config.SETTINGS, "bookings_max_page_size", 200)
    assert config.get_page_size() == 50
    assert config.get_page_size(10) == 10
    assert config.get_page_size(10_000) == 200


def test_retry_attempts_never_below_one(monkeypatch):
    monkeypatch.setitem(config.SETTINGS, "store_retry_attempts", 0)
    assert config.get_store_retry_attempts() == 1
    monkeypatch.setitem(config.SETTINGS, "store_retry_attempts", "x")
    assert config.get_store_retry_attempts() == 2


def test_default_timezone_falls_back_to_utc(monkeypatch):
    monkeypatch.setitem(config.SETTINGS, "default_timezone", "Mars/Olympus")
    assert config.get_default_timezone() == ZoneInfo("UTC")
    monkeypatch.setitem(config.SETTINGS, "default_timezone", "Europe/Kyiv")
    assert config.get_default_timezone() == ZoneInfo("Europe/Kyiv")
