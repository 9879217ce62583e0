"""Venue check-in and presence route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.api.auth_dependencies import require_user
from kingz.api.routes import limiter, raise_for_result
from kingz.database.db import get_db_session
from kingz.models.schemas import (
    CheckInRequest,
    CheckInStatusResponse,
    VenueActivePlayersResponse,
)
from kingz.services import presence_service, venue_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/venues/{venue_id}/check-in", response_model=CheckInStatusResponse)
async def get_check_in_status(
    venue_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Whether the current user is checked in at this venue."""
    try:
        return await presence_service.get_check_in_status(session, user["id"], venue_id)
    except Exception as e:
        logger.error(f"Error getting check-in status for venue {venue_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting check-in status")


@router.post("/api/venues/{venue_id}/check-in")
@limiter.limit("30/minute")
async def check_in(
    request: Request,
    venue_id: int,
    payload: CheckInRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Check in to a venue.

    The user must be within 500 m of venues that have coordinates. Checking in
    here removes the user's check-in at any other venue.
    """
    try:
        result = await presence_service.check_in(
            session, user["id"], venue_id, payload.latitude, payload.longitude
        )
        if result.get("error") == "too_far":
            return JSONResponse(
                status_code=400,
                content={"detail": result["message"], "distance": result["distance"]},
            )
        return raise_for_result(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error checking in to venue {venue_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error checking in")


@router.put("/api/venues/{venue_id}/check-in")
async def refresh_check_in(
    venue_id: int,
    payload: CheckInRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Heartbeat. success is false when the user is not checked in here and must check in again."""
    try:
        refreshed = await presence_service.refresh_check_in(
            session, user["id"], venue_id, payload.latitude, payload.longitude
        )
        if not refreshed:
            return {"success": False, "message": "Not checked in at this venue"}
        return {"success": True, "message": "Check-in refreshed"}
    except Exception as e:
        logger.error(f"Error refreshing check-in at venue {venue_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error refreshing check-in")


@router.delete("/api/venues/{venue_id}/check-in")
async def check_out(
    venue_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Check out of a venue. Succeeds even if the user was not checked in."""
    try:
        return await presence_service.check_out(session, user["id"], venue_id)
    except Exception as e:
        logger.error(f"Error checking out of venue {venue_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error checking out")


@router.get("/api/venues/{venue_id}/active-players", response_model=VenueActivePlayersResponse)
async def venue_active_players(
    venue_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Players currently checked in at the venue (excluding the caller), ranked by XP."""
    try:
        players = await venue_service.get_venue_active_players(
            session, venue_id, exclude_user_id=user["id"]
        )
    except Exception as e:
        logger.error(f"Error getting active players for venue {venue_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting active players")
    if players is None:
        raise HTTPException(status_code=404, detail="Venue not found")
    return {"venue_id": venue_id, "players": players}
