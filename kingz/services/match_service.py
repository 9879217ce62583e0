"""
1v1 match state machine.

Status flow:
    pending -> accepted | declined | cancelled (expired)
    accepted -> in_progress (recording lock taken)
    in_progress -> accepted (recording cancelled) | uploading -> analyzing
    analyzing -> completed (scored or scoreless) | disputed
    completed -> disputed

Every mutation is a conditional UPDATE on the expected current status (and, for
the recording lock, the expected holder), so two concurrent requests can never
both win a transition. Rejections come back as result dicts carrying an
``error`` code (not_found, forbidden, conflict, invalid, expired) and a
human-readable ``message``; they are not raised.
"""

import asyncio
import enum
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.database.models import Match, MatchStatus, User, Venue
from kingz.services import analysis_queue, reward_service, stats_service, storage_service
from kingz.services.user_service import avatar_for
from kingz.utils.constants import (
    CHALLENGE_EXPIRY_MINUTES,
    DEFAULT_SPORT,
    MATCH_HISTORY_DEFAULT_LIMIT,
    MATCH_HISTORY_MAX_LIMIT,
    MAX_DISPUTE_REASON_LENGTH,
    UPLOAD_STALE_MINUTES,
)
from kingz.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (MatchStatus.PENDING, MatchStatus.ACCEPTED, MatchStatus.IN_PROGRESS)
ALREADY_UPLOADED = "Video already uploaded. Analysis in progress or completed."


class MatchRole(str, enum.Enum):
    """Role of a participant, derived from the stored player slots."""

    CHALLENGER = "challenger"
    OPPONENT = "opponent"


def get_role(match: Match, user_id: int) -> Optional[MatchRole]:
    """Role of user_id in the match, or None for non-participants."""
    if user_id == match.player1_id:
        return MatchRole.CHALLENGER
    if user_id == match.player2_id:
        return MatchRole.OPPONENT
    return None


def is_recorder(match: Match, user_id: int) -> bool:
    return match.recording_by is not None and match.recording_by == user_id


def pair_key(user_a: int, user_b: int) -> str:
    """Order-independent key for a pairing, backing the one-open-challenge index."""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


def _fail(error: str, message: str, **extra: Any) -> Dict:
    return {"success": False, "error": error, "message": message, **extra}


def _cas(match_id: int, *conditions):
    """Conditional UPDATE on one match row; caller checks rowcount."""
    return (
        update(Match)
        .where(and_(Match.id == match_id, *conditions))
        .execution_options(synchronize_session=False)
    )


async def get_match(session: AsyncSession, match_id: int) -> Optional[Match]:
    """Load a match, always refreshing it from the database."""
    result = await session.execute(
        select(Match)
        .where(Match.id == match_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _load_participant(session: AsyncSession, match_id: int, user_id: int, message: str):
    """Return (match, role, None) or (None, None, failure dict)."""
    match = await get_match(session, match_id)
    if match is None:
        return None, None, _fail("not_found", "Match not found")
    role = get_role(match, user_id)
    if role is None:
        return None, None, _fail("forbidden", message)
    return match, role, None


# ============================================================================
# Challenge creation
# ============================================================================

async def has_active_match(session: AsyncSession, user_a: int, user_b: int) -> bool:
    """True if the pair already has a pending, accepted or in-progress match (either direction)."""
    result = await session.execute(
        select(Match.id)
        .where(
            and_(
                or_(
                    and_(Match.player1_id == user_a, Match.player2_id == user_b),
                    and_(Match.player1_id == user_b, Match.player2_id == user_a),
                ),
                Match.status.in_(ACTIVE_STATUSES),
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def create_challenge(
    session: AsyncSession,
    challenger_id: int,
    opponent_id: int,
    venue_id: int,
    sport: str = DEFAULT_SPORT,
) -> Dict:
    """
    Create a pending 1v1 challenge that expires after CHALLENGE_EXPIRY_MINUTES.

    Args:
        session: Database session
        challenger_id: User issuing the challenge (player1)
        opponent_id: Challenged user (player2)
        venue_id: Venue the match is played at
        sport: Sport key for stats

    Returns:
        {"success": True, "match_id", "status", "expires_at"} or a failure dict
    """
    if challenger_id == opponent_id:
        return _fail("invalid", "Cannot challenge yourself")

    venue = await session.execute(select(Venue.id).where(Venue.id == venue_id))
    if venue.scalar_one_or_none() is None:
        return _fail("not_found", "Venue not found")

    opponent = await session.execute(select(User.id).where(User.id == opponent_id))
    if opponent.scalar_one_or_none() is None:
        return _fail("not_found", "Opponent not found")

    if await has_active_match(session, challenger_id, opponent_id):
        return _fail("conflict", "Already have an active challenge with this player")

    expires_at = utcnow() + timedelta(minutes=CHALLENGE_EXPIRY_MINUTES)
    match = Match(
        venue_id=venue_id,
        sport=sport,
        player1_id=challenger_id,
        player2_id=opponent_id,
        pair_key=pair_key(challenger_id, opponent_id),
        status=MatchStatus.PENDING,
        expires_at=expires_at,
    )
    session.add(match)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent request opened a challenge for the same pair first
        await session.rollback()
        return _fail("conflict", "Already have an active challenge with this player")
    match_id = match.id
    await session.commit()

    logger.info(f"User {challenger_id} challenged {opponent_id} at venue {venue_id} (match {match_id})")
    return {
        "success": True,
        "match_id": match_id,
        "status": MatchStatus.PENDING.value,
        "expires_at": expires_at.isoformat(),
    }


# ============================================================================
# Pending challenge
# ============================================================================

def is_expired(match: Match) -> bool:
    expires_at = ensure_utc(match.expires_at)
    return expires_at is not None and utcnow() > expires_at


async def respond_to_challenge(
    session: AsyncSession, match_id: int, user_id: int, accept: bool
) -> Dict:
    """
    Invited player accepts or declines a pending challenge.

    An expired challenge is moved to cancelled and the response rejected.
    """
    match = await get_match(session, match_id)
    if match is None:
        return _fail("not_found", "Match not found")

    if match.player2_id != user_id:
        return _fail("forbidden", "Not authorized to respond to this challenge")

    if match.status != MatchStatus.PENDING:
        return _fail("conflict", "Challenge already responded to")

    if is_expired(match):
        await session.execute(
            _cas(match_id, Match.status == MatchStatus.PENDING).values(status=MatchStatus.CANCELLED)
        )
        await session.commit()
        logger.info(f"Challenge {match_id} expired before response")
        return _fail("expired", "Challenge has expired")

    new_status = MatchStatus.ACCEPTED if accept else MatchStatus.DECLINED
    result = await session.execute(
        _cas(match_id, Match.status == MatchStatus.PENDING).values(status=new_status)
    )
    if result.rowcount != 1:
        await session.rollback()
        return _fail("conflict", "Challenge already responded to")
    await session.commit()

    logger.info(f"Match {match_id} {new_status.value} by user {user_id}")
    return {
        "success": True,
        "status": new_status.value,
        "message": "Challenge accepted" if accept else "Challenge declined",
    }


async def cancel_challenge(session: AsyncSession, match_id: int, user_id: int) -> Dict:
    """Challenger withdraws a pending challenge (pending -> declined)."""
    match, role, failure = await _load_participant(
        session, match_id, user_id, "Not a participant in this match"
    )
    if failure:
        return failure

    if role != MatchRole.CHALLENGER:
        return _fail("forbidden", "Only the challenger can cancel this challenge")

    result = await session.execute(
        _cas(match_id, Match.status == MatchStatus.PENDING).values(status=MatchStatus.DECLINED)
    )
    if result.rowcount != 1:
        await session.rollback()
        return _fail("conflict", "Challenge can no longer be cancelled")
    await session.commit()

    logger.info(f"Challenge {match_id} withdrawn by user {user_id}")
    return {"success": True, "status": MatchStatus.DECLINED.value, "message": "Challenge cancelled"}


# ============================================================================
# Recording lock
# ============================================================================

async def start_match(session: AsyncSession, match_id: int, user_id: int) -> Dict:
    """
    Take the recording lock and move the match to in_progress.

    Re-entry by the current recorder succeeds. An in-progress match with no
    recorder may be claimed by either participant.
    """
    match, _, failure = await _load_participant(
        session, match_id, user_id, "Not a participant in this match"
    )
    if failure:
        return failure

    now = utcnow()
    if match.status == MatchStatus.ACCEPTED:
        result = await session.execute(
            _cas(match_id, Match.status == MatchStatus.ACCEPTED).values(
                status=MatchStatus.IN_PROGRESS,
                recording_by=user_id,
                recording_started_at=now,
                started_at=func.coalesce(Match.started_at, now),
            )
        )
        if result.rowcount == 1:
            await session.commit()
            logger.info(f"Match {match_id} started, user {user_id} recording")
            return {
                "success": True,
                "status": MatchStatus.IN_PROGRESS.value,
                "message": "Match started. You are recording.",
            }
        # Lost the race; look at what the winner did
        await session.rollback()
        match = await get_match(session, match_id)

    if match.status == MatchStatus.IN_PROGRESS:
        if is_recorder(match, user_id):
            return {
                "success": True,
                "status": MatchStatus.IN_PROGRESS.value,
                "message": "You are already recording this match",
            }
        if match.recording_by is None:
            result = await session.execute(
                _cas(
                    match_id,
                    Match.status == MatchStatus.IN_PROGRESS,
                    Match.recording_by.is_(None),
                ).values(recording_by=user_id, recording_started_at=now)
            )
            if result.rowcount == 1:
                await session.commit()
                logger.info(f"User {user_id} took over recording of match {match_id}")
                return {
                    "success": True,
                    "status": MatchStatus.IN_PROGRESS.value,
                    "message": "Match started. You are recording.",
                }
            await session.rollback()
        return _fail("conflict", "Other player is already recording this match")

    if match.status == MatchStatus.PENDING:
        return _fail("conflict", "Challenge has not been accepted yet")
    return _fail("conflict", "Match not ready to start")


async def cancel_recording(session: AsyncSession, match_id: int, user_id: int) -> Dict:
    """
    Release the recording lock so the other participant can record.

    Reverts the match to accepted and clears the recording and start times.
    Calling it when nobody holds the lock is a no-op success.
    """
    match, _, failure = await _load_participant(
        session, match_id, user_id, "Not a participant in this match"
    )
    if failure:
        return failure

    if match.recording_by is None:
        return {"success": True, "status": match.status.value, "message": "No recording in progress"}

    if not is_recorder(match, user_id):
        return _fail("conflict", "You are not the one recording")

    if match.video_url or match.status != MatchStatus.IN_PROGRESS:
        return _fail("conflict", "Video already uploaded, cannot cancel")

    result = await session.execute(
        _cas(
            match_id,
            Match.status == MatchStatus.IN_PROGRESS,
            Match.recording_by == user_id,
            Match.video_url.is_(None),
        ).values(
            status=MatchStatus.ACCEPTED,
            recording_by=None,
            recording_started_at=None,
            started_at=None,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        return _fail("conflict", "Video already uploaded, cannot cancel")
    await session.commit()

    logger.info(f"User {user_id} cancelled recording of match {match_id}")
    return {
        "success": True,
        "status": MatchStatus.ACCEPTED.value,
        "message": "Recording cancelled. Other player can now record.",
    }


# ============================================================================
# Upload and analysis
# ============================================================================

async def begin_upload(session: AsyncSession, match_id: int, user_id: int) -> Dict:
    """
    Claim the single upload slot: in_progress -> uploading.

    Only the recorder may upload and only while no video is stored. The claim
    is committed before the blob is written so a retried request sees it.
    """
    match, _, failure = await _load_participant(
        session, match_id, user_id, "Not a participant in this match"
    )
    if failure:
        return failure

    if match.video_url or match.status in (MatchStatus.UPLOADING, MatchStatus.ANALYZING):
        return _fail("conflict", ALREADY_UPLOADED)
    if match.status != MatchStatus.IN_PROGRESS:
        return _fail("conflict", "Match not in progress")
    if not is_recorder(match, user_id):
        return _fail("conflict", "Only the recording player can upload the video")

    result = await session.execute(
        _cas(
            match_id,
            Match.status == MatchStatus.IN_PROGRESS,
            Match.recording_by == user_id,
            Match.video_url.is_(None),
        ).values(status=MatchStatus.UPLOADING, upload_started_at=utcnow())
    )
    if result.rowcount != 1:
        await session.rollback()
        return _fail("conflict", ALREADY_UPLOADED)
    await session.commit()
    return {"success": True, "status": MatchStatus.UPLOADING.value}


async def abort_upload(session: AsyncSession, match_id: int) -> None:
    """Give the upload slot back after a storage failure (uploading -> in_progress)."""
    await session.rollback()
    await session.execute(
        _cas(
            match_id,
            Match.status == MatchStatus.UPLOADING,
            Match.video_url.is_(None),
        ).values(status=MatchStatus.IN_PROGRESS, upload_started_at=None)
    )
    await session.commit()


async def complete_upload(session: AsyncSession, match_id: int, video_url: str) -> Dict:
    """
    Stamp video_url, move to analyzing and enqueue the analysis job in one transaction.

    Returns:
        {"success": True, "status": "analyzing", "video_url", "job_id"} or a failure dict
    """
    result = await session.execute(
        _cas(
            match_id,
            Match.status == MatchStatus.UPLOADING,
            Match.video_url.is_(None),
        ).values(video_url=video_url, status=MatchStatus.ANALYZING)
    )
    if result.rowcount != 1:
        await session.rollback()
        return _fail("conflict", ALREADY_UPLOADED)

    job_id = await analysis_queue.enqueue_analysis(session, match_id, video_url)
    await session.commit()

    logger.info(f"Match {match_id} video stored at {video_url}, analysis job {job_id} queued")
    return {
        "success": True,
        "status": MatchStatus.ANALYZING.value,
        "video_url": video_url,
        "job_id": job_id,
    }


async def upload_match_video(
    session: AsyncSession,
    match_id: int,
    user_id: int,
    video_bytes: bytes,
    content_type: str,
) -> Dict:
    """
    Store the match video and dispatch analysis without waiting for it.

    Storage failures and cancellation release the upload slot and propagate
    to the caller. Slots left behind by a crash are released by
    release_stale_uploads.
    """
    claim = await begin_upload(session, match_id, user_id)
    if not claim["success"]:
        return claim

    try:
        video_url = await asyncio.to_thread(
            storage_service.upload_match_video, match_id, video_bytes, content_type
        )
    except (Exception, asyncio.CancelledError):
        logger.error(f"Video upload failed for match {match_id}", exc_info=True)
        await asyncio.shield(abort_upload(session, match_id))
        raise

    stored = await complete_upload(session, match_id, video_url)
    if stored["success"]:
        analysis_queue.get_analysis_queue().dispatch(stored["job_id"])
    return stored


async def release_stale_uploads(
    session: AsyncSession, stale_minutes: int = UPLOAD_STALE_MINUTES
) -> int:
    """
    Return uploads that never finished (uploading with no video_url for longer
    than stale_minutes) to in_progress so the recorder can retry. Commits.

    Returns:
        Number of matches released
    """
    cutoff = utcnow() - timedelta(minutes=stale_minutes)
    result = await session.execute(
        update(Match)
        .where(
            and_(
                Match.status == MatchStatus.UPLOADING,
                Match.video_url.is_(None),
                or_(Match.upload_started_at.is_(None), Match.upload_started_at < cutoff),
            )
        )
        .values(status=MatchStatus.IN_PROGRESS, upload_started_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = result.rowcount or 0
    if released:
        logger.warning(f"Released {released} abandoned upload(s)")
    return released


async def finalize_analysis(
    session: AsyncSession, match_id: int, analysis: Optional[Dict[str, Any]]
) -> bool:
    """
    Record the analysis outcome: analyzing -> completed.

    With no analysis the match completes scoreless (no winner, no rewards).
    The conditional update means a duplicate run cannot overwrite a result.
    A match disputed while still analyzing keeps its disputed status, but a
    scored analysis is recorded on it so the reviewer sees what was detected.
    Commits.

    Returns:
        True if this call completed the match
    """
    match = await get_match(session, match_id)
    if match is None:
        logger.warning(f"Cannot finalize analysis: match {match_id} not found")
        return False

    now = utcnow()
    if analysis is None:
        values = {
            "player1_score": None,
            "player2_score": None,
            "winner_id": None,
            "winner_xp": 0,
            "winner_rp": 0,
            "loser_xp": 0,
        }
    else:
        outcome = reward_service.resolve_outcome(
            match.player1_id,
            match.player2_id,
            analysis["player1_score"],
            analysis["player2_score"],
        )
        values = {
            "player1_score": analysis["player1_score"],
            "player2_score": analysis["player2_score"],
            "analysis_confidence": analysis.get("confidence"),
            **outcome,
        }

    result = await session.execute(
        _cas(match_id, Match.status == MatchStatus.ANALYZING).values(
            status=MatchStatus.COMPLETED, completed_at=now, **values
        )
    )
    if result.rowcount != 1 and analysis is not None:
        # Disputed before analysis finished: completed_at is still unset
        recorded = await session.execute(
            _cas(
                match_id,
                Match.status == MatchStatus.DISPUTED,
                Match.completed_at.is_(None),
                Match.player1_score.is_(None),
            ).values(**values)
        )
        if recorded.rowcount == 1:
            logger.info(
                f"Match {match_id} disputed during analysis; recorded "
                f"{values['player1_score']}-{values['player2_score']} for review"
            )
    await session.commit()

    if result.rowcount != 1:
        logger.info(f"Match {match_id} no longer analyzing; match not completed")
        return False

    if analysis is None:
        logger.warning(f"Match {match_id} completed without scores")
    else:
        logger.info(
            f"Match {match_id} completed {values['player1_score']}-{values['player2_score']}, "
            f"winner {values['winner_id']}"
        )
    return True


# ============================================================================
# Agreement and dispute
# ============================================================================

async def _mark_disputed(
    session: AsyncSession,
    match_id: int,
    user_id: int,
    allowed_from: tuple,
    reason: Optional[str] = None,
    details: Optional[str] = None,
) -> bool:
    result = await session.execute(
        _cas(
            match_id,
            Match.status.in_(allowed_from),
            Match.stats_applied.is_(False),
        ).values(
            status=MatchStatus.DISPUTED,
            dispute_reason=reason[:MAX_DISPUTE_REASON_LENGTH] if reason else None,
            dispute_details=details or None,
            disputed_by=user_id,
            disputed_at=utcnow(),
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        return False
    await session.commit()
    logger.info(f"Match {match_id} disputed by user {user_id}")
    return True


async def submit_agreement(
    session: AsyncSession, match_id: int, user_id: int, agree: bool
) -> Dict:
    """
    Record a participant's verdict on a completed match.

    agree=False disputes the result. When both players have agreed the stats
    are applied exactly once.

    Returns:
        {"success", "both_agreed", "status", "message"} or a failure dict
    """
    match, role, failure = await _load_participant(session, match_id, user_id, "Not a participant")
    if failure:
        return {**failure, "both_agreed": False}

    if match.status != MatchStatus.COMPLETED:
        return _fail("conflict", "Match not ready for agreement", both_agreed=False)

    if not agree:
        if not await _mark_disputed(session, match_id, user_id, (MatchStatus.COMPLETED,)):
            return _fail("conflict", "Match already finalized", both_agreed=False)
        return {
            "success": True,
            "both_agreed": False,
            "status": MatchStatus.DISPUTED.value,
            "message": "Match disputed. An admin will review.",
        }

    flag = Match.player1_agreed if role == MatchRole.CHALLENGER else Match.player2_agreed
    result = await session.execute(
        _cas(match_id, Match.status == MatchStatus.COMPLETED).values({flag: True})
    )
    if result.rowcount != 1:
        await session.rollback()
        return _fail("conflict", "Match not ready for agreement", both_agreed=False)

    match = await get_match(session, match_id)
    both_agreed = bool(match.player1_agreed and match.player2_agreed)

    if both_agreed:
        claim = await session.execute(
            _cas(
                match_id,
                Match.player1_agreed.is_(True),
                Match.player2_agreed.is_(True),
                Match.stats_applied.is_(False),
            ).values(stats_applied=True)
        )
        if claim.rowcount == 1:
            await stats_service.apply_match_result(session, match_id)
    await session.commit()

    logger.info(f"User {user_id} agreed to match {match_id} result (both agreed: {both_agreed})")
    return {
        "success": True,
        "both_agreed": both_agreed,
        "status": MatchStatus.COMPLETED.value,
        "message": "Match finalized" if both_agreed else "Waiting for opponent",
    }


async def dispute_match(
    session: AsyncSession,
    match_id: int,
    user_id: int,
    reason: Optional[str] = None,
    details: Optional[str] = None,
) -> Dict:
    """Flag a completed (or still analyzing) match for manual review."""
    match, _, failure = await _load_participant(
        session, match_id, user_id, "You are not a participant in this match"
    )
    if failure:
        return failure

    if match.status == MatchStatus.DISPUTED:
        return _fail("conflict", "Match already disputed")
    if match.status not in (MatchStatus.ANALYZING, MatchStatus.COMPLETED):
        return _fail("conflict", "Match cannot be disputed in its current state")
    if match.stats_applied:
        return _fail("conflict", "Match already finalized")

    disputed = await _mark_disputed(
        session,
        match_id,
        user_id,
        (MatchStatus.ANALYZING, MatchStatus.COMPLETED),
        reason=reason,
        details=details,
    )
    if not disputed:
        return _fail("conflict", "Match cannot be disputed in its current state")
    return {
        "success": True,
        "status": MatchStatus.DISPUTED.value,
        "message": "Match disputed. An admin will review.",
    }


# ============================================================================
# Reads
# ============================================================================

async def _load_users(session: AsyncSession, user_ids) -> Dict[int, User]:
    result = await session.execute(select(User).where(User.id.in_(list(set(user_ids)))))
    return {u.id: u for u in result.scalars().all()}


async def _venue_names(session: AsyncSession, venue_ids) -> Dict[int, str]:
    result = await session.execute(
        select(Venue.id, Venue.name).where(Venue.id.in_(list(set(venue_ids))))
    )
    return {row.id: row.name for row in result.all()}


def _player_dict(user: Optional[User], user_id: int, score, agreed) -> Dict:
    return {
        "id": user_id,
        "name": user.name if user else None,
        "avatar_url": avatar_for(user.avatar_url if user else None, user.gender if user else None),
        "score": score,
        "agreed": bool(agreed),
    }


def serialize_match(match: Match, users: Dict[int, User], venue_name: Optional[str]) -> Dict:
    """Full match snapshot."""
    return {
        "id": match.id,
        "status": match.status.value,
        "sport": match.sport,
        "venue_id": match.venue_id,
        "venue_name": venue_name or "Unknown",
        "player1": _player_dict(
            users.get(match.player1_id), match.player1_id, match.player1_score, match.player1_agreed
        ),
        "player2": _player_dict(
            users.get(match.player2_id), match.player2_id, match.player2_score, match.player2_agreed
        ),
        "winner_id": match.winner_id,
        "video_url": match.video_url,
        "recording_by": match.recording_by,
        "winner_xp": match.winner_xp,
        "winner_rp": match.winner_rp,
        "loser_xp": match.loser_xp,
        "analysis_confidence": match.analysis_confidence,
        "dispute_reason": match.dispute_reason,
        "expires_at": isoformat_or_none(match.expires_at),
        "created_at": isoformat_or_none(match.created_at),
        "started_at": isoformat_or_none(match.started_at),
        "completed_at": isoformat_or_none(match.completed_at),
    }


async def get_match_snapshot(session: AsyncSession, match_id: int, user_id: int) -> Dict:
    """Match snapshot for a participant, with the caller's derived role."""
    match, role, failure = await _load_participant(
        session, match_id, user_id, "Not a participant in this match"
    )
    if failure:
        return failure

    users = await _load_users(session, [match.player1_id, match.player2_id])
    venues = await _venue_names(session, [match.venue_id])
    return {
        "success": True,
        "match": serialize_match(match, users, venues.get(match.venue_id)),
        "role": role.value,
        "is_challenger": role == MatchRole.CHALLENGER,
        "is_opponent": role == MatchRole.OPPONENT,
        "is_recorder": is_recorder(match, user_id),
    }


def _earnings(match: Match, user_id: int) -> Dict[str, int]:
    """XP/RP this user earned from the persisted rewards."""
    if match.winner_id is None:
        # Tie pays loser_xp to both; a scoreless match stores 0
        return {"xp_earned": match.loser_xp or 0, "rp_earned": 0}
    if match.winner_id == user_id:
        return {"xp_earned": match.winner_xp or 0, "rp_earned": match.winner_rp or 0}
    return {"xp_earned": match.loser_xp or 0, "rp_earned": 0}


async def get_match_results(session: AsyncSession, match_id: int, user_id: int) -> Dict:
    """
    Analysis-aware result view.

    While uploading/analyzing: {"status", "analyzing": True, "result": None}.
    Once completed or disputed: a summary from the caller's point of view.
    """
    match, role, failure = await _load_participant(session, match_id, user_id, "Not a participant")
    if failure:
        return failure

    if match.status in (MatchStatus.UPLOADING, MatchStatus.ANALYZING):
        return {"success": True, "status": match.status.value, "analyzing": True, "result": None}

    if match.status not in (MatchStatus.COMPLETED, MatchStatus.DISPUTED):
        return {"success": True, "status": match.status.value, "analyzing": False, "result": None}

    is_challenger = role == MatchRole.CHALLENGER
    opponent_id = match.player2_id if is_challenger else match.player1_id
    users = await _load_users(session, [opponent_id])
    venues = await _venue_names(session, [match.venue_id])
    opponent = users.get(opponent_id)

    scored = match.player1_score is not None and match.player2_score is not None
    return {
        "success": True,
        "status": match.status.value,
        "analyzing": False,
        "result": {
            "is_winner": match.winner_id == user_id,
            "is_tie": scored and match.player1_score == match.player2_score,
            "scored": scored,
            "user_score": match.player1_score if is_challenger else match.player2_score,
            "opponent_score": match.player2_score if is_challenger else match.player1_score,
            "opponent": {
                "id": opponent_id,
                "name": opponent.name if opponent else None,
                "avatar_url": avatar_for(
                    opponent.avatar_url if opponent else None,
                    opponent.gender if opponent else None,
                ),
            },
            **_earnings(match, user_id),
            "user_agreed": bool(match.player1_agreed if is_challenger else match.player2_agreed),
            "opponent_agreed": bool(match.player2_agreed if is_challenger else match.player1_agreed),
            "venue_name": venues.get(match.venue_id, "Unknown"),
            "started_at": isoformat_or_none(match.started_at),
            "completed_at": isoformat_or_none(match.completed_at),
        },
    }


async def get_match_history(
    session: AsyncSession, user_id: int, limit: int = MATCH_HISTORY_DEFAULT_LIMIT
) -> List[Dict]:
    """The user's matches, newest first."""
    limit = max(1, min(limit, MATCH_HISTORY_MAX_LIMIT))
    result = await session.execute(
        select(Match)
        .where(or_(Match.player1_id == user_id, Match.player2_id == user_id))
        .order_by(Match.created_at.desc(), Match.id.desc())
        .limit(limit)
    )
    matches = result.scalars().all()
    if not matches:
        return []

    opponent_ids = [m.player2_id if m.player1_id == user_id else m.player1_id for m in matches]
    users = await _load_users(session, opponent_ids)
    venues = await _venue_names(session, [m.venue_id for m in matches])

    history = []
    for m, opponent_id in zip(matches, opponent_ids):
        is_challenger = m.player1_id == user_id
        opponent = users.get(opponent_id)
        history.append(
            {
                "id": m.id,
                "status": m.status.value,
                "role": (MatchRole.CHALLENGER if is_challenger else MatchRole.OPPONENT).value,
                "venue_name": venues.get(m.venue_id, "Unknown"),
                "opponent": {
                    "id": opponent_id,
                    "name": opponent.name if opponent else None,
                    "avatar_url": avatar_for(
                        opponent.avatar_url if opponent else None,
                        opponent.gender if opponent else None,
                    ),
                },
                "user_score": m.player1_score if is_challenger else m.player2_score,
                "opponent_score": m.player2_score if is_challenger else m.player1_score,
                "is_winner": m.winner_id == user_id,
                "created_at": isoformat_or_none(m.created_at),
                "completed_at": isoformat_or_none(m.completed_at),
            }
        )
    return history
