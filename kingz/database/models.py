"""
SQLAlchemy ORM models for the Beat the Kingz match and check-in system.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, text
from kingz.database.db import Base


class MatchStatus(str, enum.Enum):
    """1v1 match lifecycle status."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


# Statuses in which a pairing counts as an open challenge
ACTIVE_PAIR_CONDITION = "status IN ('pending', 'accepted', 'in_progress')"


class AnalysisJobStatus(str, enum.Enum):
    """Match analysis job status enum."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    """Application users."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    gender = Column(String, nullable=True)  # "male" / "female", picks the default avatar
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    stats = relationship("PlayerStats", back_populates="user")


class PlayerStats(Base):
    """Per-sport progression for a user."""

    __tablename__ = "player_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    sport = Column(String, nullable=False, default="basketball")
    total_xp = Column(Integer, nullable=False, default=0)
    total_rp = Column(Integer, nullable=False, default=0)
    available_rp = Column(Integer, nullable=False, default=0)
    matches_played = Column(Integer, nullable=False, default=0)
    matches_won = Column(Integer, nullable=False, default=0)
    matches_lost = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="stats")

    __table_args__ = (
        UniqueConstraint("user_id", "sport", name="uq_player_stats_user_sport"),
        Index("idx_player_stats_sport_xp", "sport", "total_xp"),
    )


class Venue(Base):
    """Courts / playgrounds players check in to. Reference data."""

    __tablename__ = "venues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    district = Column(String, nullable=True)
    city = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)  # Distance checks are skipped when null
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_venues_city", "city"),)


class ActivePlayer(Base):
    """Presence record: this user is currently at this venue."""

    __tablename__ = "active_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    user = relationship("User")
    venue = relationship("Venue")

    __table_args__ = (
        # At most one presence record per user, across all venues
        UniqueConstraint("user_id", name="uq_active_players_user"),
        Index("idx_active_players_venue", "venue_id"),
        Index("idx_active_players_last_seen", "last_seen_at"),
    )


class Match(Base):
    """A 1v1 contest between two users at a venue."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False)
    sport = Column(String, nullable=False, default="basketball")
    player1_id = Column(Integer, ForeignKey("users.id"), nullable=False)  # Challenger
    player2_id = Column(Integer, ForeignKey("users.id"), nullable=False)  # Opponent
    # "low:high" user ids; shared by both directions of a pairing
    pair_key = Column(String, nullable=False)
    player1_score = Column(Integer, nullable=True)
    player2_score = Column(Integer, nullable=True)
    winner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(
        Enum(MatchStatus, values_callable=lambda x: [e.value for e in x]),
        default=MatchStatus.PENDING,
        nullable=False,
    )
    player1_agreed = Column(Boolean, nullable=False, default=False)
    player2_agreed = Column(Boolean, nullable=False, default=False)
    stats_applied = Column(Boolean, nullable=False, default=False)

    # Recording lock and upload idempotency guard
    recording_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    recording_started_at = Column(DateTime(timezone=True), nullable=True)
    upload_started_at = Column(DateTime(timezone=True), nullable=True)
    video_url = Column(String, nullable=True)

    # Rewards quoted when analysis completes
    winner_xp = Column(Integer, nullable=False, default=0)
    winner_rp = Column(Integer, nullable=False, default=0)
    loser_xp = Column(Integer, nullable=False, default=0)
    analysis_confidence = Column(Float, nullable=True)

    dispute_reason = Column(String(50), nullable=True)
    dispute_details = Column(Text, nullable=True)
    disputed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    venue = relationship("Venue")
    player1 = relationship("User", foreign_keys=[player1_id])
    player2 = relationship("User", foreign_keys=[player2_id])

    __table_args__ = (
        CheckConstraint("player1_id != player2_id", name="ck_matches_distinct_players"),
        CheckConstraint(
            "winner_id IS NULL OR winner_id = player1_id OR winner_id = player2_id",
            name="ck_matches_winner_is_player",
        ),
        Index("idx_matches_player1", "player1_id"),
        Index("idx_matches_player2", "player2_id"),
        Index("idx_matches_status", "status"),
        Index("idx_matches_created_at", "created_at"),
        # At most one open challenge per pair
        Index(
            "uq_matches_active_pair",
            "pair_key",
            unique=True,
            postgresql_where=text(ACTIVE_PAIR_CONDITION),
            sqlite_where=text(ACTIVE_PAIR_CONDITION),
        ),
    )


class MatchAnalysisJob(Base):
    """Queue for match video analysis jobs."""

    __tablename__ = "match_analysis_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    video_url = Column(String, nullable=False)
    status = Column(
        Enum(AnalysisJobStatus, values_callable=lambda x: [e.value for e in x]),
        default=AnalysisJobStatus.PENDING,
        nullable=False,
    )
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    # Relationships
    match = relationship("Match")

    __table_args__ = (
        # One analysis per match
        UniqueConstraint("match_id", name="uq_match_analysis_jobs_match"),
        Index("idx_match_analysis_jobs_status", "status"),
        Index("idx_match_analysis_jobs_created_at", "created_at"),
    )
