from clinic_booking.services.users import ensure_service_account

SERVICE_EMAIL = "front-desk-bot@example.com"
SERVICE_PASSWORD = "bot-password-123"


def service_headers(api_client, session) -> dict[str, str]:
    ensure_service_account(session, email=SERVICE_EMAIL, password=SERVICE_PASSWORD)
    res = api_client.post("/auth/login", json={"email": SERVICE_EMAIL, "password": SERVICE_PASSWORD})
    assert res.status_code == 200, res.text
    assert res.json()["role"] == "service"
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def test_login_rejects_bad_password(api_client, admin_credentials):
    email, _ = admin_credentials
    res = api_client.post("/auth/login", json={"email": email, "password": "wrong"})
    assert res.status_code == 401


def test_garbage_token_is_rejected(api_client):
    res = api_client.get("/slots?start=2026-02-20&end=2026-02-20", headers={"Authorization": "Bearer nope"})
    assert res.status_code == 401


def test_service_account_is_created_once(session):
    ensure_service_account(session, email=SERVICE_EMAIL, password=SERVICE_PASSWORD)
    assert ensure_service_account(session, email=SERVICE_EMAIL, password=SERVICE_PASSWORD) is False


def test_service_account_books_but_cannot_merge(api_client, auth_headers, session):
    headers = service_headers(api_client, session)
    created = api_client.post("/patients", json={"name": "Hanako Sato"}, headers=auth_headers)
    patient_id = created.json()["patient_id"]

    booked = api_client.post(
        "/bookings", json={"patient_id": patient_id, "date": "2026-02-20", "time": "10:00"}, headers=headers
    )
    assert booked.status_code == 201, booked.text

    merge = api_client.post(
        "/patients/merge", json={"primary_id": patient_id, "duplicate_id": "P404"}, headers=headers
    )
    assert merge.status_code == 403
