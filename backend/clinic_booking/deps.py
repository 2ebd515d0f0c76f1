from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_booking.core.security import decode_access_token
from clinic_booking.core.settings import settings
from clinic_booking.db.session import get_db
from clinic_booking.models.user import Role, User
from clinic_booking.services.ledger_client import LedgerClient


def get_current_user(
    db: Session = Depends(get_db), authorization: str | None = Header(default=None)
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        user_id = decode_access_token(token, secret=settings.secret_key, alg=settings.jwt_alg)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = db.scalar(select(User).where(User.id == user_id))
    # Close the read transaction; reconciliation handlers work in their own sessions.
    db.commit()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive user")
    return user


def require_roles(*roles: Role):
    allowed = {role.value for role in roles}

    def _inner(user: User = Depends(get_current_user)) -> User:
        if user.role.value not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _inner


require_staff = require_roles(Role.admin, Role.staff)
require_admin = require_roles(Role.admin)


def get_ledger_client(request: Request) -> LedgerClient | None:
    return getattr(request.app.state, "ledger_client", None)
