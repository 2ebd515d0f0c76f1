import json
import os
import tempfile
from datetime import date

_DB_DIR = tempfile.mkdtemp(prefix="clinic_booking_tests_")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'clinic_booking.db')}"
)
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("ADMIN_PASSWORD", "ChangeMe123!")
os.environ["LEDGER_BASE_URL"] = ""
os.environ["RECONCILE_SCHEDULE_ENABLED"] = "false"

import httpx
import pytest
from fastapi.testclient import TestClient

from clinic_booking.db.session import SessionLocal, engine
from clinic_booking.deps import get_ledger_client
from clinic_booking.main import app
from clinic_booking.models import Base
from clinic_booking.services.identity import create_patient
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.schedule import ensure_default_hours
from clinic_booking.services.users import seed_initial_admin


class FakeLedger:
    """In-memory stand-in for the ledger service behind an httpx mock transport."""

    def __init__(self):
        self.entries: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.client = LedgerClient(
            "http://ledger.test",
            max_attempts=2,
            backoff_seconds=0,
            transport=httpx.MockTransport(self.handle),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="ledger down")
        if request.method == "POST":
            payload = json.loads(request.content)
            self.entries[payload["reserve_id"]] = payload
            return httpx.Response(200, json={"ok": True})
        start = date.fromisoformat(request.url.params["from"])
        end = date.fromisoformat(request.url.params["to"])
        rows = [
            row
            for row in self.entries.values()
            if start <= date.fromisoformat(row["date"]) <= end
        ]
        return httpx.Response(200, json={"entries": rows, "next_page": None})

    def put(self, reserve_id, patient_id, day, time_text, status):
        self.entries[reserve_id] = {
            "reserve_id": reserve_id,
            "patient_id": patient_id,
            "date": day.isoformat(),
            "time": time_text,
            "status": status,
        }


@pytest.fixture(scope="session")
def admin_credentials():
    email = os.getenv("ADMIN_EMAIL", "admin@example.com")
    password = os.getenv("ADMIN_PASSWORD", "ChangeMe123!")
    return email, password


@pytest.fixture(scope="session", autouse=True)
def database(admin_credentials):
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def clean_tables(database, admin_credentials):
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            if table.name == "users":
                continue
            conn.execute(table.delete())
    email, password = admin_credentials
    with SessionLocal() as db:
        seed_initial_admin(db, email=email, password=password)
        ensure_default_hours(db)
    yield


@pytest.fixture
def session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def make_patient(session):
    def _make(patient_id, name=None, **fields):
        return create_patient(session, actor="test", patient_id=patient_id, name=name, **fields)

    return _make


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture(scope="session")
def api_client():
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="session")
def auth_headers(api_client, admin_credentials):
    email, password = admin_credentials
    response = api_client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json().get("access_token")
    assert token, "Missing access_token in login response"
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def ledger_override(fake_ledger):
    app.dependency_overrides[get_ledger_client] = lambda: fake_ledger.client
    yield fake_ledger
    app.dependency_overrides.pop(get_ledger_client, None)
