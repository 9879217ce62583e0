"""
Active-venue discovery for 1v1 challenges.

Uses in-Python haversine sorting (efficient for the small number of venues
that have active players at any one time).
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.database.models import ActivePlayer, PlayerStats, User, Venue
from kingz.services.user_service import avatar_for
from kingz.utils.constants import (
    ACTIVE_PLAYERS_PREVIEW,
    ACTIVE_VENUES_DEFAULT_LIMIT,
    DEFAULT_SPORT,
    STALE_CHECK_IN_HOURS,
)
from kingz.utils.datetime_utils import utcnow, isoformat_or_none
from kingz.utils.geo_utils import calculate_distance_km, format_distance

logger = logging.getLogger(__name__)


def _active_players_query(sport: str):
    """Presence rows joined with user and per-sport XP (0 when the user has no stats yet)."""
    cutoff = utcnow() - timedelta(hours=STALE_CHECK_IN_HOURS)
    return (
        select(
            ActivePlayer.venue_id,
            ActivePlayer.user_id,
            ActivePlayer.latitude,
            ActivePlayer.longitude,
            ActivePlayer.last_seen_at,
            User.name,
            User.gender,
            User.avatar_url,
            PlayerStats.total_xp,
        )
        .join(User, User.id == ActivePlayer.user_id)
        .outerjoin(
            PlayerStats,
            and_(PlayerStats.user_id == ActivePlayer.user_id, PlayerStats.sport == sport),
        )
        .where(ActivePlayer.last_seen_at >= cutoff)
    )


async def get_venue(session: AsyncSession, venue_id: int) -> Optional[Venue]:
    result = await session.execute(select(Venue).where(Venue.id == venue_id))
    return result.scalar_one_or_none()


def _rank_players(rows) -> List:
    # Highest XP first; user id keeps equal-XP players in a stable order
    return sorted(rows, key=lambda r: (-(r.total_xp or 0), r.user_id))


async def find_active_venues(
    session: AsyncSession,
    user_lat: float,
    user_lng: float,
    exclude_user_id: Optional[int] = None,
    limit: int = ACTIVE_VENUES_DEFAULT_LIMIT,
    sport: str = DEFAULT_SPORT,
) -> Dict:
    """
    Venues with active players, nearest first.

    Each venue carries a preview of its top players by XP and the true count of
    active players, both excluding exclude_user_id. Venues where nobody but the
    excluded user is active are dropped. total_active_venues counts the surviving
    venues before truncation to limit.

    Returns:
        {"venues": [...], "total_active_venues": int}
    """
    query = _active_players_query(sport)
    if exclude_user_id is not None:
        query = query.where(ActivePlayer.user_id != exclude_user_id)

    result = await session.execute(query)
    players_by_venue: Dict[int, List] = {}
    for row in result.all():
        players_by_venue.setdefault(row.venue_id, []).append(row)

    if not players_by_venue:
        return {"venues": [], "total_active_venues": 0}

    venue_result = await session.execute(
        select(Venue).where(Venue.id.in_(list(players_by_venue.keys())))
    )
    venues = venue_result.scalars().all()

    active_venues = []
    for venue in venues:
        players = _rank_players(players_by_venue[venue.id])

        distance = None
        if venue.latitude is not None and venue.longitude is not None:
            distance = calculate_distance_km(user_lat, user_lng, venue.latitude, venue.longitude)

        active_venues.append(
            {
                "id": venue.id,
                "name": venue.name,
                "district": venue.district,
                "distance": round(distance, 3) if distance is not None else None,
                "distance_formatted": format_distance(distance) if distance is not None else "Unknown",
                "active_player_count": len(players),
                "active_players": [
                    {
                        "id": p.user_id,
                        "avatar_url": avatar_for(p.avatar_url, p.gender),
                        "rank": rank,
                    }
                    for rank, p in enumerate(players[:ACTIVE_PLAYERS_PREVIEW], start=1)
                ],
                "_sort_distance": distance,
            }
        )

    # Nearest first; venues without coordinates last; venue id breaks ties
    active_venues.sort(
        key=lambda v: (
            v["_sort_distance"] is None,
            v["_sort_distance"] or 0.0,
            v["id"],
        )
    )
    for v in active_venues:
        del v["_sort_distance"]

    return {
        "venues": active_venues[:limit],
        "total_active_venues": len(active_venues),
    }


async def get_venue_active_players(
    session: AsyncSession,
    venue_id: int,
    exclude_user_id: Optional[int] = None,
    sport: str = DEFAULT_SPORT,
) -> Optional[List[Dict]]:
    """
    Active players at one venue ranked by XP.

    Returns:
        List of player dicts, or None if the venue does not exist
    """
    venue = await get_venue(session, venue_id)
    if venue is None:
        return None

    query = _active_players_query(sport).where(ActivePlayer.venue_id == venue_id)
    if exclude_user_id is not None:
        query = query.where(ActivePlayer.user_id != exclude_user_id)
    result = await session.execute(query)

    has_coordinates = venue.latitude is not None and venue.longitude is not None
    players = []
    for rank, p in enumerate(_rank_players(result.all()), start=1):
        distance = None
        if has_coordinates and p.latitude is not None and p.longitude is not None:
            distance = calculate_distance_km(p.latitude, p.longitude, venue.latitude, venue.longitude)
        players.append(
            {
                "id": p.user_id,
                "name": p.name,
                "avatar_url": avatar_for(p.avatar_url, p.gender),
                "total_xp": p.total_xp or 0,
                "rank": rank,
                "distance": round(distance, 3) if distance is not None else None,
                "last_seen_at": isoformat_or_none(p.last_seen_at),
            }
        )
    return players
