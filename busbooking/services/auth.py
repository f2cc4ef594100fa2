from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from busbooking.config import settings
from busbooking.services.policy import Actor, Role


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(caller_id: str, role: Role) -> str:
    expire = _now() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"sub": str(caller_id), "role": Role(role).value, "type": "access", "exp": int(expire.timestamp())}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token


def _decode_token(token: str) -> dict:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> Actor:
    payload = _decode_token(token)
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    sub = payload.get("sub")
    if not sub:
        raise JWTError("Token has no subject")
    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise JWTError("Unknown role")
    return Actor(caller_id=sub, role=role)
