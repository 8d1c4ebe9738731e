"""Actor bearer tokens.

In production tokens come from the organization's identity provider and only
``decode_token`` is used; ``create_access_token`` serves local development
and tests. ``sub`` is the directory user id.
"""
from datetime import datetime, timedelta, timezone

from jose import jwt

from approval_routing.core.config import settings
from approval_routing.models.workflow import SYSTEM_ACTOR


# ─── JWT ──────────────────────────────────────────────────────────────────────

def create_access_token(actor_id: str, role: str, expires_minutes: int | None = None) -> str:
    if actor_id == SYSTEM_ACTOR:
        raise ValueError("The system actor is reserved for the scheduler and cannot hold a token.")
    minutes = settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {
            "sub": actor_id,
            "role": role,
            "type": "access",
            "iss": settings.JWT_ISSUER,
            "iat": now,
            "exp": now + timedelta(minutes=minutes),
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> dict:
    """Raises JWTError on an invalid, expired or foreign-issuer token."""
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        issuer=settings.JWT_ISSUER,
    )
