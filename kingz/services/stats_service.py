"""
Stat finalisation for agreed 1v1 matches.
"""

import logging
from typing import Dict

from sqlalchemy import select, update, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.database.models import Match, PlayerStats

logger = logging.getLogger(__name__)


async def _increment_stats(
    session: AsyncSession, user_id: int, sport: str, deltas: Dict[str, int]
) -> None:
    """Add deltas to a user's per-sport stats row, creating the row on first use."""
    values = {name: getattr(PlayerStats, name) + amount for name, amount in deltas.items()}
    where = and_(PlayerStats.user_id == user_id, PlayerStats.sport == sport)

    result = await session.execute(
        update(PlayerStats).where(where).values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return

    try:
        async with session.begin_nested():
            await session.execute(
                insert(PlayerStats).values(user_id=user_id, sport=sport, **deltas)
            )
    except IntegrityError:
        # Row created concurrently; fall back to incrementing it
        await session.execute(
            update(PlayerStats).where(where).values(**values)
            .execution_options(synchronize_session=False)
        )


async def apply_match_result(session: AsyncSession, match_id: int) -> bool:
    """
    Credit both players for a finalised match.

    Winner: played+1, won+1, total_xp += winner_xp, total_rp and available_rp
    += winner_rp. Loser: played+1, lost+1, total_xp += loser_xp. A tie (no
    winner) counts as played for both and pays loser_xp to each.

    The caller guarantees this runs once per match (stats_applied claim).
    Does not commit.

    Returns:
        False if the match does not exist
    """
    result = await session.execute(select(Match).where(Match.id == match_id))
    match = result.scalar_one_or_none()
    if match is None:
        logger.warning(f"Cannot apply stats: match {match_id} not found")
        return False

    sport = match.sport
    if match.winner_id is None:
        for user_id in (match.player1_id, match.player2_id):
            await _increment_stats(
                session, user_id, sport,
                {"matches_played": 1, "total_xp": match.loser_xp},
            )
        logger.info(f"Applied tie result for match {match_id}")
        return True

    loser_id = match.player2_id if match.winner_id == match.player1_id else match.player1_id
    await _increment_stats(
        session, match.winner_id, sport,
        {
            "matches_played": 1,
            "matches_won": 1,
            "total_xp": match.winner_xp,
            "total_rp": match.winner_rp,
            "available_rp": match.winner_rp,
        },
    )
    await _increment_stats(
        session, loser_id, sport,
        {"matches_played": 1, "matches_lost": 1, "total_xp": match.loser_xp},
    )
    logger.info(
        f"Applied result for match {match_id}: winner {match.winner_id} "
        f"+{match.winner_xp}xp/+{match.winner_rp}rp, loser {loser_id} +{match.loser_xp}xp"
    )
    return True
