# backend/calilights/dependencies.py
"""
Request-scoped identity for the HTTP routes.

get_current_user resolves the bearer token to an active User row.
verify_cron_secret gates the sweep triggers on the X-Cron-Secret header.
Whether the user administers or merely belongs to a chain is decided by the
services from the membership table, not here.
"""

import logging
import uuid
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select

from .database.models import User
from .services.auth_service import auth_service
from .services.database_service import database_service

logger = logging.getLogger("calilights.dependencies")

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """Resolve the bearer token to an active user, or answer 401."""
    if not credentials:
        raise _unauthorized("Bearer token required")

    try:
        payload = auth_service.decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Bearer token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Bearer token rejected")

    if not auth_service.verify_token_type(payload, "access"):
        raise _unauthorized("Only access tokens are accepted")

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Bearer token names no user")

    async with database_service.get_session() as session:
        result = await session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()

    if not user:
        raise _unauthorized("Unknown user")
    if not user.is_active:
        raise _unauthorized("User is deactivated")

    logger.debug(f"Request authenticated as {user.id}")
    return user


async def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
) -> None:
    """401 unless X-Cron-Secret matches CRON_SECRET."""
    if not auth_service.verify_cron_secret(x_cron_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing cron secret",
        )
