"""Bearer token handling. Tokens are issued by the identity service; this side verifies them."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
import structlog

from allocator.config import settings

logger = structlog.get_logger()

_private_key: Optional[str] = None
_public_key: Optional[str] = None


def _load_private_key() -> str:
    global _private_key
    if _private_key is None:
        with open(settings.JWT_PRIVATE_KEY_PATH, "r") as f:
            _private_key = f.read()
    return _private_key


def _load_public_key() -> str:
    global _public_key
    if _public_key is None:
        with open(settings.JWT_PUBLIC_KEY_PATH, "r") as f:
            _public_key = f.read()
    return _public_key


def create_access_token(
    user_id: str,
    tenant_id: str,
    role: str,
    email: str,
    private_key: Optional[str] = None,
) -> str:
    """Used by local tooling and tests; production tokens come from the identity service."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    return jwt.encode(
        claims, private_key or _load_private_key(), algorithm=settings.JWT_ALGORITHM
    )


def decode_token(token: str, public_key: Optional[str] = None) -> dict:
    """Decode and verify a JWT token. Raises JWTError on failure."""
    return jwt.decode(
        token, public_key or _load_public_key(), algorithms=[settings.JWT_ALGORITHM]
    )


def verify_access_token(token: str) -> dict:
    payload = decode_token(token)
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    for claim in ("sub", "tenant_id", "role"):
        if not payload.get(claim):
            raise JWTError(f"Missing claim {claim}")
    return payload
