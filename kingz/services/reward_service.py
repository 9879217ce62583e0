"""
Reward calculation for completed 1v1 matches.
"""

from typing import Dict, Optional

from kingz.utils.constants import (
    BASE_XP,
    WIN_BONUS_XP,
    XP_PER_POINT_MARGIN,
    MAX_MARGIN_BONUS_XP,
    BASE_RP,
    RP_PER_POINT_MARGIN,
    MAX_WINNER_RP,
    LOSER_XP,
)


def calculate_rewards(winner_score: int, loser_score: int) -> Dict[str, int]:
    """
    Map a final score pair to XP/RP payouts.

    Winner XP is base + win bonus + a margin bonus capped so the total never
    exceeds 200. Winner RP grows with the margin and is capped at 50. The loser
    always gets the flat LOSER_XP.

    Args:
        winner_score: Score of the player labelled winner
        loser_score: Score of the other player

    Returns:
        Dict with winner_xp, winner_rp, loser_xp
    """
    margin = max(winner_score - loser_score, 0)
    margin_bonus = min(margin * XP_PER_POINT_MARGIN, MAX_MARGIN_BONUS_XP)
    return {
        "winner_xp": BASE_XP + WIN_BONUS_XP + margin_bonus,
        "winner_rp": min(BASE_RP + margin * RP_PER_POINT_MARGIN, MAX_WINNER_RP),
        "loser_xp": LOSER_XP,
    }


def resolve_outcome(
    player1_id: int, player2_id: int, player1_score: int, player2_score: int
) -> Dict[str, Optional[int]]:
    """
    Decide the winner and the persisted rewards for a scored match.

    A tie has no winner: both players are paid as losers and no RP is awarded.

    Returns:
        Dict with winner_id (None on a tie), winner_xp, winner_rp, loser_xp
    """
    if player1_score == player2_score:
        return {"winner_id": None, "winner_xp": 0, "winner_rp": 0, "loser_xp": LOSER_XP}

    if player1_score > player2_score:
        winner_id, high, low = player1_id, player1_score, player2_score
    else:
        winner_id, high, low = player2_id, player2_score, player1_score

    rewards = calculate_rewards(high, low)
    return {"winner_id": winner_id, **rewards}
