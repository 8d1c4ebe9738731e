from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from approval_routing.core.clock import Clock, SystemClock
from approval_routing.core.config import settings
from approval_routing.core.security import decode_token
from approval_routing.models.workflow import SYSTEM_ACTOR

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller. Identity lives in the external directory."""

    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == settings.ADMIN_ROLE


async def get_current_actor(
    token: Annotated[str, Depends(oauth2_scheme)],
) -> Actor:
    """Validate the bearer JWT and return the acting user."""
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            raise credentials_exc
        actor_id: str | None = payload.get("sub")
        if not actor_id or actor_id == SYSTEM_ACTOR:
            raise credentials_exc
    except JWTError:
        raise credentials_exc
    return Actor(id=actor_id, role=payload.get("role") or "")


def require_role(*roles: str):
    """Dependency factory; raises 403 if actor role not in allowed list."""
    async def check(actor: Actor = Depends(get_current_actor)):
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{actor.role}' is not permitted for this action.",
            )
        return actor
    return check


def get_clock() -> Clock:
    """Time source for request handlers; tests override it with a FixedClock."""
    return SystemClock()
