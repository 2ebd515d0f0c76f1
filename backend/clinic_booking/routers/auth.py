from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from clinic_booking.core.security import create_access_token
from clinic_booking.core.settings import settings
from clinic_booking.db.session import get_db
from clinic_booking.schemas.auth import LoginRequest, Token
from clinic_booking.services.users import authenticate

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=Token)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return Token(
        access_token=create_access_token(
            user_id=user.id,
            role=user.role.value,
            secret=settings.secret_key,
            alg=settings.jwt_alg,
            expires_minutes=settings.access_token_expire_minutes,
        ),
        role=user.role,
    )
