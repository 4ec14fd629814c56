"""API dependencies: DB sessions, JWT authentication and the origin device."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from markview.config import settings
from markview.db.database import get_session
from markview.sse.connection_manager import ConnectionManager, get_connection_manager

DEMO_USER_ID = "00000000-0000-0000-0000-000000000000"

# ---------------------------------------------------------------------------
# Database dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async for session in get_session():
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db)]

# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, email: str | None = None) -> str:
    """Create a signed JWT access token."""
    expire = datetime.now(UTC) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload: dict = {"sub": user_id, "exp": expire}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Decode and validate a JWT. Returns the payload or raises."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        if payload.get("sub") is None:
            raise JWTError("Missing subject")
        return payload
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)] = None,
) -> str:
    """Extract the authenticated user ID from the Bearer token.

    Without a token, dev mode falls back to a demo user; otherwise 401.
    """
    if credentials is None:
        if settings.dev_mode:
            return DEMO_USER_ID
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    payload = verify_token(credentials.credentials)
    return payload["sub"]


CurrentUserId = Annotated[str, Depends(get_current_user_id)]

# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


async def get_origin_device_id(
    x_device_id: Annotated[str | None, Header(max_length=128)] = None,
) -> str | None:
    """Device that issued the request, used to tag broadcasts."""
    return x_device_id or None


OriginDeviceId = Annotated[str | None, Depends(get_origin_device_id)]
Connections = Annotated[ConnectionManager, Depends(get_connection_manager)]
