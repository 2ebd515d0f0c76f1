from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinic_booking.core.security import hash_password, verify_password
from clinic_booking.models.user import Role, User

logger = logging.getLogger("clinic_booking.users")


def _normalise_email(email: str) -> str:
    return email.lower().strip()


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.scalar(select(User).where(User.email == _normalise_email(email)))


def authenticate(db: Session, email: str, password: str) -> User | None:
    """Look up a login. Inactive accounts are returned so callers can tell them apart."""
    user = get_user_by_email(db, email)
    if user is None or not verify_password(password, user.hashed_password):
        return None
    return user


def add_user(db: Session, *, email: str, password: str, role: Role, full_name: str = "") -> User:
    user = User(
        email=_normalise_email(email),
        full_name=full_name,
        role=role,
        is_active=True,
        hashed_password=hash_password(password),
    )
    db.add(user)
    return user


def seed_initial_admin(db: Session, *, email: str, password: str) -> bool:
    if db.scalar(select(func.count(User.id))):
        db.commit()
        return False
    add_user(db, email=email, password=password, role=Role.admin, full_name="Admin")
    db.commit()
    return True


def ensure_service_account(db: Session, *, email: str, password: str) -> bool:
    """Create the account the messaging front-end books through, once."""
    existing = get_user_by_email(db, email)
    if existing is not None:
        if existing.role != Role.service:
            logger.warning("Service account %s exists with role %s", email, existing.role.value)
        db.commit()
        return False
    add_user(db, email=email, password=password, role=Role.service, full_name="Messaging front-end")
    db.commit()
    return True
