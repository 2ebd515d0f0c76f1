from uuid import uuid4

from sqlalchemy import update

from clinic_booking.models.patient import Patient

SLOT = {"date": "2026-02-20", "time": "10:00"}


def new_patient(api_client, auth_headers, **fields) -> str:
    payload = {"name": "Hanako Sato", **fields}
    res = api_client.post("/patients", json=payload, headers=auth_headers)
    assert res.status_code == 201, res.text
    return res.json()["patient_id"]


def test_requires_authentication(api_client):
    res = api_client.post("/bookings", json={"patient_id": "P1", **SLOT})
    assert res.status_code == 401


def test_booking_lifecycle(api_client, auth_headers):
    patient_id = new_patient(api_client, auth_headers)
    assert patient_id.startswith("P")

    created = api_client.post("/bookings", json={"patient_id": patient_id, **SLOT}, headers=auth_headers)
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["status"] == "pending"
    assert body["date"] == "2026-02-20"
    assert body["time"] == "10:00:00"
    reserve_id = body["reserve_id"]

    current = api_client.get(f"/patients/{patient_id}/current-booking", headers=auth_headers)
    assert current.status_code == 200
    assert current.json()["reserve_id"] == reserve_id

    confirmed = api_client.post(f"/bookings/{reserve_id}/confirm", headers=auth_headers)
    assert confirmed.json()["status"] == "confirmed"

    moved = api_client.post(
        f"/bookings/{reserve_id}/reschedule",
        json={"date": "2026-02-20", "time": "11:30"},
        headers=auth_headers,
    )
    assert moved.status_code == 200, moved.text
    assert moved.json()["time"] == "11:30:00"

    canceled = api_client.post(
        f"/bookings/{reserve_id}/cancel", json={"reason": "schedule clash"}, headers=auth_headers
    )
    assert canceled.status_code == 200
    assert canceled.json()["status"] == "canceled"
    assert canceled.json()["cancel_reason"] == "schedule clash"

    current = api_client.get(f"/patients/{patient_id}/current-booking", headers=auth_headers)
    assert current.json()["reserve_id"] is None


def test_business_rejections_map_to_error_codes(api_client, auth_headers):
    first = new_patient(api_client, auth_headers)
    second = new_patient(api_client, auth_headers, name="Taro Suzuki")
    ok = api_client.post("/bookings", json={"patient_id": first, **SLOT}, headers=auth_headers)
    assert ok.status_code == 201

    full = api_client.post("/bookings", json={"patient_id": second, **SLOT}, headers=auth_headers)
    assert full.status_code == 409
    assert full.json()["error"] == "CapacityExceeded"

    duplicate = api_client.post(
        "/bookings", json={"patient_id": first, "date": "2026-02-20", "time": "11:00"}, headers=auth_headers
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "DuplicateActiveBooking"

    closed = api_client.post(
        "/bookings", json={"patient_id": second, "date": "2026-02-21", "time": "10:00"}, headers=auth_headers
    )
    assert closed.status_code == 422
    assert closed.json()["error"] == "SlotUnavailable"

    missing = api_client.get(f"/bookings/resv-{uuid4().hex[:16]}", headers=auth_headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "BookingNotFound"


def test_staff_may_book_outside_hours(api_client, auth_headers):
    patient_id = new_patient(api_client, auth_headers)
    res = api_client.post(
        "/bookings",
        json={"patient_id": patient_id, "date": "2026-02-21", "time": "10:00", "allow_outside_hours": True},
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text


def test_booking_is_pushed_to_ledger_after_commit(api_client, auth_headers, ledger_override):
    patient_id = new_patient(api_client, auth_headers)
    res = api_client.post("/bookings", json={"patient_id": patient_id, **SLOT}, headers=auth_headers)
    assert res.status_code == 201
    reserve_id = res.json()["reserve_id"]

    assert ledger_override.entries[reserve_id]["status"] == "pending"

    api_client.post(f"/bookings/{reserve_id}/cancel", headers=auth_headers)
    assert ledger_override.entries[reserve_id]["status"] == "canceled"


def test_ledger_outage_does_not_fail_booking(api_client, auth_headers, ledger_override):
    ledger_override.fail_with = 503
    patient_id = new_patient(api_client, auth_headers)
    res = api_client.post("/bookings", json={"patient_id": patient_id, **SLOT}, headers=auth_headers)
    assert res.status_code == 201, res.text
    assert ledger_override.entries == {}


def test_slot_availability_and_capacity(api_client, auth_headers):
    patient_id = new_patient(api_client, auth_headers)
    api_client.put("/slots/2026-02-20/10:00/capacity", json={"capacity": 3}, headers=auth_headers)
    api_client.post("/bookings", json={"patient_id": patient_id, **SLOT}, headers=auth_headers)

    res = api_client.get("/slots", params={"start": "2026-02-20", "end": "2026-02-20"}, headers=auth_headers)
    assert res.status_code == 200
    slots = {item["slot_time"]: item for item in res.json()}
    assert slots["10:00:00"] == {
        "slot_date": "2026-02-20",
        "slot_time": "10:00:00",
        "capacity": 3,
        "booked": 1,
        "remaining": 2,
    }
    assert slots["09:00:00"]["remaining"] == 1


def test_merge_and_identity_endpoints(api_client, auth_headers):
    primary = new_patient(api_client, auth_headers, messaging_uid="U-api-1")
    duplicate = new_patient(api_client, auth_headers)

    linked = api_client.post(
        f"/patients/{duplicate}/messaging-identity", json={"messaging_uid": "U-api-1"}, headers=auth_headers
    )
    assert linked.status_code == 409
    assert linked.json()["error"] == "IdentityConflict"

    merged = api_client.post(
        "/patients/merge", json={"primary_id": primary, "duplicate_id": duplicate}, headers=auth_headers
    )
    assert merged.status_code == 200, merged.text
    assert merged.json()["already_merged"] is False

    again = api_client.post(
        "/patients/merge", json={"primary_id": primary, "duplicate_id": duplicate}, headers=auth_headers
    )
    assert again.json() == {
        "primary_patient_id": primary,
        "duplicate_patient_id": duplicate,
        "rows_reassigned": 0,
        "already_merged": True,
    }

    resolved = api_client.get("/identities/U-api-1", headers=auth_headers)
    assert resolved.status_code == 200
    assert resolved.json()["patient_id"] == primary

    via_duplicate = api_client.get(f"/patients/{duplicate}", headers=auth_headers)
    assert via_duplicate.json()["patient_id"] == primary

    unknown = api_client.get("/identities/U-nobody", headers=auth_headers)
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "PatientNotFound"


def test_identity_lookup_is_read_only_and_merge_needs_post(api_client, auth_headers, session):
    first = new_patient(api_client, auth_headers, messaging_uid="U-api-shared")
    second = new_patient(api_client, auth_headers)
    session.execute(update(Patient).where(Patient.patient_id == second).values(messaging_uid="U-api-shared"))
    session.commit()

    lookup = api_client.get("/identities/U-api-shared", headers=auth_headers)
    assert lookup.status_code == 409
    assert lookup.json()["error"] == "IdentityConflict"
    assert api_client.get(f"/patients/{second}", headers=auth_headers).json()["merged_into_patient_id"] is None

    merged = api_client.post("/identities/U-api-shared/resolve", headers=auth_headers)
    assert merged.status_code == 200, merged.text
    assert merged.json()["patient_id"] == first
    assert api_client.get("/identities/U-api-shared", headers=auth_headers).json()["patient_id"] == first
