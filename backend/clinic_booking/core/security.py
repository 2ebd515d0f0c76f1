from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(
    *,
    user_id: int,
    role: str,
    secret: str,
    alg: str,
    expires_minutes: int,
) -> str:
    issued = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=alg)


def decode_access_token(token: str, *, secret: str, alg: str) -> int:
    """Return the user id carried by a bearer token.

    Raises ValueError for anything that is not a well-formed, unexpired token.
    """
    try:
        claims = jwt.decode(token, secret, algorithms=[alg])
    except JWTError as exc:
        raise ValueError("invalid token") from exc
    subject = claims.get("sub")
    if not subject:
        raise ValueError("token has no subject")
    return int(subject)
