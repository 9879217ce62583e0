"""1v1 challenge and match route handlers."""

import logging

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.api.auth_dependencies import require_user
from kingz.api.routes import limiter, raise_for_result
from kingz.database.db import get_db_session
from kingz.models.schemas import (
    AgreeRequest,
    AgreeResponse,
    ActiveVenuesResponse,
    ChallengeRequest,
    ChallengeResponse,
    DisputeRequest,
    MatchActionResponse,
    RespondRequest,
    UploadResponse,
)
from kingz.services import match_service, venue_service
from kingz.services.video_analysis_service import validate_video_file
from kingz.utils.constants import (
    ACTIVE_VENUES_DEFAULT_LIMIT,
    ACTIVE_VENUES_MAX_LIMIT,
    MATCH_HISTORY_DEFAULT_LIMIT,
)

logger = logging.getLogger(__name__)
router = APIRouter()

PREFIX = "/api/challenges/1v1"


# ---------------------------------------------------------------------------
# Static paths (declared before /{match_id})
# ---------------------------------------------------------------------------


@router.post(f"{PREFIX}/request", response_model=ChallengeResponse)
@limiter.limit("20/minute")
async def request_challenge(
    request: Request,
    payload: ChallengeRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Challenge another player at a venue. The challenge expires after two minutes."""
    try:
        result = await match_service.create_challenge(
            session, user["id"], payload.opponent_id, payload.venue_id, payload.sport
        )
        return raise_for_result(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating challenge: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating challenge")


@router.get(f"{PREFIX}/history")
async def match_history(
    limit: int = Query(MATCH_HISTORY_DEFAULT_LIMIT),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """The current user's 1v1 matches, newest first."""
    try:
        matches = await match_service.get_match_history(session, user["id"], limit)
        return {"matches": matches}
    except Exception as e:
        logger.error(f"Error getting match history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting match history")


@router.get(f"{PREFIX}/active-venues", response_model=ActiveVenuesResponse)
async def active_venues(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    limit: int = Query(ACTIVE_VENUES_DEFAULT_LIMIT),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Venues with active players, nearest first, for picking an opponent."""
    try:
        limit = max(1, min(limit, ACTIVE_VENUES_MAX_LIMIT))
        return await venue_service.find_active_venues(
            session, lat, lng, exclude_user_id=user["id"], limit=limit
        )
    except Exception as e:
        logger.error(f"Error finding active venues: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error finding active venues")


# ---------------------------------------------------------------------------
# Single match
# ---------------------------------------------------------------------------


@router.get(f"{PREFIX}/{{match_id}}")
async def get_match(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Match snapshot with the caller's role and recording flag."""
    try:
        return raise_for_result(await match_service.get_match_snapshot(session, match_id, user["id"]))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting match")


@router.post(f"{PREFIX}/{{match_id}}/respond", response_model=MatchActionResponse)
async def respond_to_challenge(
    match_id: int,
    payload: RespondRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Accept or decline a pending challenge (invited player only)."""
    try:
        result = await match_service.respond_to_challenge(
            session, match_id, user["id"], payload.accept
        )
        return raise_for_result(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error responding to challenge {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error responding to challenge")


@router.post(f"{PREFIX}/{{match_id}}/cancel", response_model=MatchActionResponse)
async def cancel_challenge(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Withdraw a pending challenge (challenger only)."""
    try:
        return raise_for_result(await match_service.cancel_challenge(session, match_id, user["id"]))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error cancelling challenge {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error cancelling challenge")


@router.post(f"{PREFIX}/{{match_id}}/start", response_model=MatchActionResponse)
async def start_match(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Start recording the match. Only one participant can hold the recording lock."""
    try:
        return raise_for_result(await match_service.start_match(session, match_id, user["id"]))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error starting match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error starting match")


@router.post(f"{PREFIX}/{{match_id}}/cancel-recording", response_model=MatchActionResponse)
async def cancel_recording(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Release the recording lock so the other player can record."""
    try:
        return raise_for_result(await match_service.cancel_recording(session, match_id, user["id"]))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error cancelling recording for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error cancelling recording")


@router.post(f"{PREFIX}/{{match_id}}/upload", response_model=UploadResponse)
@limiter.limit("10/minute")
async def upload_match_video(
    request: Request,
    match_id: int,
    video: UploadFile = File(...),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Upload the match recording (recording player only, once per match).

    The video is stored and analysis starts in the background; poll
    /results for the outcome.
    """
    try:
        # Reject on the declared size before buffering the body
        if video.size is not None:
            is_valid, error_msg = validate_video_file(video.size, video.content_type)
            if not is_valid:
                raise HTTPException(status_code=400, detail=error_msg)

        content = await video.read()
        is_valid, error_msg = validate_video_file(len(content), video.content_type)
        if not is_valid:
            raise HTTPException(status_code=400, detail=error_msg)

        result = await match_service.upload_match_video(
            session, match_id, user["id"], content, video.content_type
        )
        return raise_for_result(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error uploading video for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to upload video")


@router.get(f"{PREFIX}/{{match_id}}/results")
async def match_results(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Analysis status, or the result from the caller's point of view once scored."""
    try:
        return raise_for_result(await match_service.get_match_results(session, match_id, user["id"]))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting results for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting match results")


@router.post(f"{PREFIX}/{{match_id}}/agree", response_model=AgreeResponse)
async def agree_to_result(
    match_id: int,
    payload: AgreeRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Agree with (or reject) the analysed result. Stats apply once both agree."""
    try:
        result = await match_service.submit_agreement(session, match_id, user["id"], payload.agree)
        return raise_for_result(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error submitting agreement for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error submitting agreement")


@router.post(f"{PREFIX}/{{match_id}}/dispute", response_model=MatchActionResponse)
async def dispute_match(
    match_id: int,
    payload: DisputeRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Flag the result for manual review."""
    try:
        result = await match_service.dispute_match(
            session, match_id, user["id"], reason=payload.reason, details=payload.details
        )
        return raise_for_result(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error disputing match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error disputing match")
