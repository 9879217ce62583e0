"""
User service layer for user lookups.
"""

from typing import Optional, Dict
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from kingz.database.models import User
import logging

logger = logging.getLogger(__name__)

DEFAULT_AVATARS = {
    "male": "/avatars/default-male.png",
    "female": "/avatars/default-female.png",
}


def avatar_for(avatar_url: Optional[str], gender: Optional[str]) -> str:
    """Avatar URL for a user, falling back to the gender default."""
    if avatar_url:
        return avatar_url
    return DEFAULT_AVATARS.get((gender or "").lower(), DEFAULT_AVATARS["male"])


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[Dict]:
    """
    Get user by ID.

    Args:
        session: Database session
        user_id: User ID

    Returns:
        User dictionary or None if not found
    """
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    return _user_to_dict(user) if user else None


def _user_to_dict(user: User) -> Dict:
    """
    Convert a User ORM instance to a dictionary.

    Args:
        user: User ORM instance

    Returns:
        User dictionary
    """
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "gender": user.gender,
        "avatar_url": avatar_for(user.avatar_url, user.gender),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
