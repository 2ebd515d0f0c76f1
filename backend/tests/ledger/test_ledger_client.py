import asyncio
import json
import logging
from datetime import date, timedelta

import httpx
import pytest

from clinic_booking.core.errors import LedgerSyncError
from clinic_booking.models.booking import BookingStatus
from clinic_booking.schemas.ledger import LedgerEntry
from clinic_booking.services.ledger_client import LedgerClient

ENTRY = LedgerEntry(
    reserve_id="resv-1",
    patient_id="P1",
    date=date(2026, 2, 20),
    time="10:00",
    status=BookingStatus.pending,
)


def make_client(handler, **kwargs) -> LedgerClient:
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_seconds", 0)
    return LedgerClient("http://ledger.test", transport=httpx.MockTransport(handler), **kwargs)


def row(reserve_id: str, day: date, status: str = "pending") -> dict:
    return {"reserve_id": reserve_id, "patient_id": "P1", "date": day.isoformat(), "time": "10:00", "status": status}


def test_push_retries_transient_failures():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"ok": True})

    asyncio.run(make_client(handler).push_entry(ENTRY))

    assert len(calls) == 3
    assert json.loads(calls[-1].content) == {
        "reserve_id": "resv-1",
        "patient_id": "P1",
        "date": "2026-02-20",
        "time": "10:00",
        "status": "pending",
    }


def test_push_gives_up_after_max_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(LedgerSyncError):
        asyncio.run(make_client(handler, max_attempts=2).push_entry(ENTRY))
    assert len(calls) == 2


def test_rejection_is_not_retried_and_body_is_logged(caplog):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text='{"error":"invalid status column"}')

    with caplog.at_level(logging.WARNING, logger="clinic_booking.ledger"):
        with pytest.raises(LedgerSyncError) as excinfo:
            asyncio.run(make_client(handler).push_entry(ENTRY))

    assert len(calls) == 1
    assert excinfo.value.status_code == 400
    assert excinfo.value.body == '{"error":"invalid status column"}'
    assert "invalid status column" in caplog.text


def test_ok_false_body_counts_as_rejection():
    def handler(request):
        return httpx.Response(200, json={"ok": False, "error": "sheet locked"})

    with pytest.raises(LedgerSyncError):
        asyncio.run(make_client(handler).push_entry(ENTRY))


def test_snapshot_reads_in_windows_and_merges():
    start = date(2026, 2, 1)
    requested = []

    def handler(request):
        lo = date.fromisoformat(request.url.params["from"])
        hi = date.fromisoformat(request.url.params["to"])
        requested.append((lo, hi))
        rows = [row(f"resv-{lo.isoformat()}", lo)]
        return httpx.Response(200, json=rows)

    entries = asyncio.run(make_client(handler, window_days=7).fetch_snapshot(start, start + timedelta(days=13)))

    assert requested == [
        (date(2026, 2, 1), date(2026, 2, 7)),
        (date(2026, 2, 8), date(2026, 2, 14)),
    ]
    assert sorted(e.reserve_id for e in entries) == ["resv-2026-02-01", "resv-2026-02-08"]


def test_snapshot_splits_window_when_response_too_large():
    start = date(2026, 2, 1)
    end = date(2026, 2, 4)
    requested = []

    def handler(request):
        lo = date.fromisoformat(request.url.params["from"])
        hi = date.fromisoformat(request.url.params["to"])
        requested.append((lo, hi))
        if (hi - lo).days >= 2:
            return httpx.Response(200, json={"ok": False, "error": "too_large"})
        days = [lo + timedelta(days=i) for i in range((hi - lo).days + 1)]
        return httpx.Response(200, json={"entries": [row(f"resv-{d.isoformat()}", d) for d in days]})

    entries = asyncio.run(make_client(handler, window_days=7).fetch_snapshot(start, end))

    assert requested[0] == (start, end)
    assert len(entries) == 4


def test_single_day_still_too_large_fails():
    def handler(request):
        return httpx.Response(200, content=b"x" * 200)

    client = make_client(handler, max_response_bytes=100)
    with pytest.raises(LedgerSyncError):
        asyncio.run(client.fetch_snapshot(date(2026, 2, 1), date(2026, 2, 1)))


def test_page_cap_splits_window_instead_of_truncating():
    start = date(2026, 2, 1)
    end = date(2026, 2, 2)

    def handler(request):
        lo = date.fromisoformat(request.url.params["from"])
        hi = date.fromisoformat(request.url.params["to"])
        page = int(request.url.params["page"])
        if lo != hi:
            return httpx.Response(200, json={"entries": [row(f"resv-wide-{page}", lo)], "next_page": page + 1})
        next_page = 2 if page == 1 else None
        return httpx.Response(200, json={"entries": [row(f"resv-{lo.isoformat()}-{page}", lo)], "next_page": next_page})

    entries = asyncio.run(make_client(handler, max_pages=2).fetch_snapshot(start, end))

    assert sorted(e.reserve_id for e in entries) == [
        "resv-2026-02-01-1",
        "resv-2026-02-01-2",
        "resv-2026-02-02-1",
        "resv-2026-02-02-2",
    ]


def test_single_day_over_page_cap_fails():
    def handler(request):
        page = int(request.url.params["page"])
        return httpx.Response(200, json={"entries": [row(f"resv-{page}", date(2026, 2, 1))], "next_page": page + 1})

    client = make_client(handler, max_pages=3)
    with pytest.raises(LedgerSyncError, match="pages"):
        asyncio.run(client.fetch_snapshot(date(2026, 2, 1), date(2026, 2, 1)))


def test_snapshot_follows_pages_and_skips_malformed_rows():
    day = date(2026, 2, 20)

    def handler(request):
        page = int(request.url.params["page"])
        if page == 1:
            return httpx.Response(
                200,
                json={
                    "entries": [row("resv-a", day), {"reserve_id": "resv-bad", "date": "not a date"}],
                    "next_page": 2,
                },
            )
        return httpx.Response(200, json={"reservations": [row("resv-b", day, status="Cancelled")]})

    entries = asyncio.run(make_client(handler).fetch_snapshot(day, day))

    by_id = {e.reserve_id: e for e in entries}
    assert set(by_id) == {"resv-a", "resv-b"}
    assert by_id["resv-b"].status == BookingStatus.canceled


def test_from_settings_without_url_returns_none():
    from clinic_booking.core.settings import Settings

    assert LedgerClient.from_settings(Settings(ledger_base_url="")) is None
    client = LedgerClient.from_settings(Settings(ledger_base_url="https://ledger.example/api/"))
    assert client.base_url == "https://ledger.example/api"
