import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from clinic_booking.core.errors import BookingCoreError
from clinic_booking.core.settings import settings, validate_settings
from clinic_booking.db.session import SessionLocal, engine
from clinic_booking.models import Base
from clinic_booking.routers.auth import router as auth_router
from clinic_booking.routers.bookings import router as bookings_router
from clinic_booking.routers.patients import identity_router, router as patients_router
from clinic_booking.routers.reconciliation import router as reconciliation_router
from clinic_booking.routers.settings import router as settings_router
from clinic_booking.routers.slots import router as slots_router
from clinic_booking.services.ledger_client import LedgerClient
from clinic_booking.services.scheduler import reconcile_forever
from clinic_booking.services.schedule import ensure_default_hours
from clinic_booking.services.users import ensure_service_account, seed_initial_admin

app = FastAPI(title="Clinic Booking API", version="0.1.0")
logger = logging.getLogger("clinic_booking.startup")


@app.exception_handler(BookingCoreError)
async def booking_error_handler(request: Request, exc: BookingCoreError):
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.detail},
        headers=headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
async def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)

    admin_email = str(settings.admin_email)
    admin_password = settings.admin_password.strip()
    db: Session = SessionLocal()
    try:
        created = seed_initial_admin(db, email=admin_email, password=admin_password)
        if created:
            logger.info("Initial admin created for %s.", admin_email)
        else:
            logger.info("Initial admin not created (users already exist).")
        if settings.service_account_email and ensure_service_account(
            db,
            email=str(settings.service_account_email),
            password=settings.service_account_password,
        ):
            logger.info("Service account created for %s.", settings.service_account_email)
        if ensure_default_hours(db):
            logger.info("Default clinic hours seeded.")
    finally:
        db.close()

    app.state.ledger_client = LedgerClient.from_settings(settings)
    app.state.scheduler_task = None
    if settings.reconcile_schedule_enabled:
        app.state.scheduler_task = asyncio.create_task(
            reconcile_forever(SessionLocal, app.state.ledger_client)
        )


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "scheduler_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(patients_router)
app.include_router(identity_router)
app.include_router(bookings_router)
app.include_router(slots_router)
app.include_router(settings_router)
app.include_router(reconciliation_router)
