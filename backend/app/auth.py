"""Authentication utilities for the jobflow backend.

Session mechanics live upstream; this module only turns a bearer JWT
into the `Actor` the workflow core expects. Tokens carry the actor id in
`sub` and the actor role in `role`.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from jobflow.commerce.actors import Actor, ActorRole

from .config import Settings, get_settings

# Bearer token scheme
security = HTTPBearer(auto_error=False)

# Roles a token may carry; SYSTEM is reserved for the sweeper
TOKEN_ROLES = {ActorRole.CUSTOMER, ActorRole.CONTRACTOR, ActorRole.ADMIN}


def create_access_token(
    actor_id: str,
    role: ActorRole,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token for an actor."""
    if role not in TOKEN_ROLES:
        raise ValueError(f"Tokens cannot be issued for role {role}")
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {
        "sub": actor_id,
        "role": ActorRole(role).value,
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _invalid_payload() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid token payload",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Actor:
    """Get the acting party from the bearer token."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials, settings)
    actor_id = payload.get("sub")
    if not actor_id or payload.get("type") != "access":
        raise _invalid_payload()
    try:
        role = ActorRole(payload.get("role"))
    except ValueError:
        raise _invalid_payload()
    if role not in TOKEN_ROLES:
        raise _invalid_payload()
    return Actor(actor_id, role)


async def require_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    """Require an admin token."""
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return actor


# Type aliases for dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_admin)]
