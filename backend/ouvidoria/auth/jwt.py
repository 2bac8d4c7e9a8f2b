"""JWT access-token validation. Tokens are issued by the identity service."""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from ouvidoria.config import settings

ALGORITHM = "HS256"


def create_access_token(user_id: str, role: str, secretariat_id: str | None = None) -> str:
    """Create a short-lived access token. Used by tooling and tests."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": str(user_id),
        "role": role,
        "secretariat_id": secretariat_id,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and validate an access token. Raises JWTError on failure."""
    payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload
