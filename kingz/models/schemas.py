"""
Pydantic models for API request/response validation.
"""

from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict

from kingz.utils.constants import DEFAULT_SPORT, MAX_DISPUTE_REASON_LENGTH


# ============================================================================
# Venues / check-in
# ============================================================================


class CheckInRequest(BaseModel):
    """Current position of the user checking in (or sending a heartbeat)."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class CheckInStatusResponse(BaseModel):
    is_checked_in: bool
    last_seen_at: Optional[str] = None


class ActivePlayerPreview(BaseModel):
    id: int
    avatar_url: str
    rank: int


class ActiveVenue(BaseModel):
    """Venue with active players, as shown in the opponent picker."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    district: Optional[str] = None
    distance: Optional[float] = None
    distance_formatted: str
    active_player_count: int
    active_players: List[ActivePlayerPreview]


class ActiveVenuesResponse(BaseModel):
    venues: List[ActiveVenue]
    total_active_venues: int


class VenueActivePlayer(BaseModel):
    id: int
    name: Optional[str] = None
    avatar_url: str
    total_xp: int
    rank: int
    distance: Optional[float] = None
    last_seen_at: Optional[str] = None


class VenueActivePlayersResponse(BaseModel):
    venue_id: int
    players: List[VenueActivePlayer]


# ============================================================================
# 1v1 matches
# ============================================================================


class ChallengeRequest(BaseModel):
    """Challenge another active player to a 1v1 match."""

    opponent_id: int
    venue_id: int
    sport: str = DEFAULT_SPORT


class RespondRequest(BaseModel):
    accept: bool


class AgreeRequest(BaseModel):
    agree: bool


class DisputeRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=MAX_DISPUTE_REASON_LENGTH)
    details: Optional[str] = Field(None, max_length=2000)


class MatchActionResponse(BaseModel):
    """Result of a state transition."""

    success: bool
    status: Optional[str] = None
    message: Optional[str] = None


class ChallengeResponse(BaseModel):
    success: bool
    match_id: int
    status: str
    expires_at: str


class UploadResponse(BaseModel):
    success: bool
    status: str
    video_url: str


class AgreeResponse(BaseModel):
    success: bool
    both_agreed: bool
    status: str
    message: str
