"""
Authentication dependencies for FastAPI routes.

The session lookup is a bearer JWT whose ``user_id`` claim must resolve to
an existing user; anything else is a 401.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from kingz.services import auth_service, user_service
from kingz.database.db import get_db_session

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    session: AsyncSession = Depends(get_db_session),
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """Resolve the bearer token to the user dict from user_service."""
    payload = auth_service.verify_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid authentication token")

    user_id = payload.get("user_id")
    if user_id is None:
        raise _unauthorized("Invalid token payload")

    user = await user_service.get_user_by_id(session, user_id)
    if user is None:
        raise _unauthorized("User not found")
    return user


async def require_user(user: dict = Depends(get_current_user)) -> dict:
    """Alias dependency for routes that only need an authenticated user."""
    return user
