"""
Venue check-in / presence service.

A presence record (ActivePlayer row) says "this user is at this venue right
now". A user has at most one record system-wide: the unique constraint on
active_players.user_id backs this up at the database level, and check-in
removes the user's records at other venues inside the same transaction as the
upsert.
"""

import logging
from datetime import timedelta
from typing import Dict

from sqlalchemy import select, update, delete, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.database.models import ActivePlayer, Venue
from kingz.utils.constants import (
    CHECK_IN_RADIUS_KM,
    STALE_CHECK_IN_HOURS,
    CHECK_IN_UPSERT_RETRIES,
)
from kingz.utils.datetime_utils import utcnow, isoformat_or_none
from kingz.utils.geo_utils import calculate_distance_km

logger = logging.getLogger(__name__)


async def check_in(
    session: AsyncSession,
    user_id: int,
    venue_id: int,
    latitude: float,
    longitude: float,
) -> Dict:
    """
    Check a user in to a venue.

    Rejects when the venue does not exist, or when the venue has coordinates and
    the supplied position is further than CHECK_IN_RADIUS_KM away. On success the
    stale sweep runs, the user's presence at any other venue is removed and the
    record for this venue is created or refreshed. Commits.

    Returns:
        {"success": True, "message": ...} or
        {"success": False, "error": "not_found" | "too_far", "message": ..., "distance"?: km}
    """
    result = await session.execute(select(Venue).where(Venue.id == venue_id))
    venue = result.scalar_one_or_none()
    if venue is None:
        return {"success": False, "error": "not_found", "message": "Venue not found"}

    if venue.latitude is not None and venue.longitude is not None:
        distance = calculate_distance_km(latitude, longitude, venue.latitude, venue.longitude)
        if distance > CHECK_IN_RADIUS_KM:
            logger.info(
                f"User {user_id} too far from venue {venue_id} to check in ({distance:.3f} km)"
            )
            return {
                "success": False,
                "error": "too_far",
                "message": "Too far from venue to check in",
                "distance": round(distance, 3),
            }

    await cleanup_stale_check_ins(session, commit=False)

    now = utcnow()
    for attempt in range(1, CHECK_IN_UPSERT_RETRIES + 1):
        await session.execute(
            delete(ActivePlayer).where(
                and_(ActivePlayer.user_id == user_id, ActivePlayer.venue_id != venue_id)
            )
        )
        updated = await session.execute(
            update(ActivePlayer)
            .where(and_(ActivePlayer.user_id == user_id, ActivePlayer.venue_id == venue_id))
            .values(latitude=latitude, longitude=longitude, last_seen_at=now)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount:
            break
        try:
            async with session.begin_nested():
                await session.execute(
                    insert(ActivePlayer).values(
                        user_id=user_id,
                        venue_id=venue_id,
                        latitude=latitude,
                        longitude=longitude,
                        last_seen_at=now,
                    )
                )
            break
        except IntegrityError:
            # A concurrent check-in for the same user committed first
            logger.info(f"Check-in race for user {user_id} (attempt {attempt}), retrying")
    else:
        raise RuntimeError(f"Could not record check-in for user {user_id} at venue {venue_id}")

    await session.commit()
    logger.info(f"User {user_id} checked in to venue {venue_id}")
    return {
        "success": True,
        "message": f"Checked in to {venue.name}",
        "venue_id": venue_id,
        "last_seen_at": now.isoformat(),
    }


async def check_out(session: AsyncSession, user_id: int, venue_id: int) -> Dict:
    """Remove the user's presence at a venue. Idempotent."""
    result = await session.execute(
        delete(ActivePlayer).where(
            and_(ActivePlayer.user_id == user_id, ActivePlayer.venue_id == venue_id)
        )
    )
    await session.commit()
    if result.rowcount:
        logger.info(f"User {user_id} checked out from venue {venue_id}")
    return {"success": True, "message": "Checked out successfully"}


async def get_check_in_status(session: AsyncSession, user_id: int, venue_id: int) -> Dict:
    """Whether the user has a presence record at this venue, and when it was last refreshed."""
    result = await session.execute(
        select(ActivePlayer.last_seen_at).where(
            and_(ActivePlayer.user_id == user_id, ActivePlayer.venue_id == venue_id)
        )
    )
    last_seen_at = result.scalar_one_or_none()
    return {
        "is_checked_in": last_seen_at is not None,
        "last_seen_at": isoformat_or_none(last_seen_at),
    }


async def refresh_check_in(
    session: AsyncSession,
    user_id: int,
    venue_id: int,
    latitude: float,
    longitude: float,
) -> bool:
    """
    Heartbeat: refresh position and last_seen_at of an existing record.

    Never creates a record. Returns False when the user is not checked in at
    this venue (the client should check in again).
    """
    result = await session.execute(
        update(ActivePlayer)
        .where(and_(ActivePlayer.user_id == user_id, ActivePlayer.venue_id == venue_id))
        .values(latitude=latitude, longitude=longitude, last_seen_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def cleanup_stale_check_ins(
    session: AsyncSession,
    threshold_hours: float = STALE_CHECK_IN_HOURS,
    commit: bool = True,
) -> int:
    """
    Delete every presence record not refreshed within threshold_hours.

    Safe to run concurrently: a record already removed by another sweep is
    simply not counted.

    Args:
        session: Database session
        threshold_hours: Staleness threshold
        commit: Commit after deleting (False when part of a larger transaction)

    Returns:
        Number of records removed
    """
    cutoff = utcnow() - timedelta(hours=threshold_hours)
    result = await session.execute(
        delete(ActivePlayer)
        .where(ActivePlayer.last_seen_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info(f"Cleaned up {removed} stale check-in(s) older than {threshold_hours}h")
    return removed
