"""
Tests for match_service: the 1v1 match state machine from challenge to
agreed result, against a real database session.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update, func

from kingz.database import db
from kingz.database.models import Match, MatchAnalysisJob, MatchStatus
from kingz.services import analysis_queue, match_service, storage_service
from kingz.utils.datetime_utils import utcnow
from conftest import make_user, make_venue, player_stats

VIDEO_URL = "https://test-bucket.s3.eu-central-1.amazonaws.com/match-videos/1/1700000000000.mp4"

SCORED = {
    "player1_score": 11,
    "player2_score": 7,
    "confidence": 0.9,
}


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def dispatched(monkeypatch):
    """Capture dispatched analysis jobs instead of running them."""
    job_ids = []
    monkeypatch.setattr(analysis_queue.get_analysis_queue(), "dispatch", job_ids.append)
    return job_ids


@pytest.fixture
def fake_storage(monkeypatch):
    uploads = []

    def fake_upload(match_id, video_bytes, content_type):
        uploads.append((match_id, video_bytes, content_type))
        return VIDEO_URL

    monkeypatch.setattr(storage_service, "upload_match_video", fake_upload)
    return uploads


async def _challenge(session, challenger, opponent, venue):
    result = await match_service.create_challenge(session, challenger.id, opponent.id, venue.id)
    assert result["success"], result
    return result["match_id"]


async def _accepted(session, challenger, opponent, venue):
    match_id = await _challenge(session, challenger, opponent, venue)
    result = await match_service.respond_to_challenge(session, match_id, opponent.id, True)
    assert result["success"], result
    return match_id


async def _recording(session, challenger, opponent, venue, recorder=None):
    match_id = await _accepted(session, challenger, opponent, venue)
    result = await match_service.start_match(session, match_id, (recorder or challenger).id)
    assert result["success"], result
    return match_id


async def _analyzing(session, challenger, opponent, venue):
    match_id = await _recording(session, challenger, opponent, venue)
    result = await match_service.upload_match_video(
        session, match_id, challenger.id, b"video", "video/mp4"
    )
    assert result["success"], result
    return match_id


async def _completed(session, challenger, opponent, venue, analysis=SCORED):
    match_id = await _analyzing(session, challenger, opponent, venue)
    assert await match_service.finalize_analysis(session, match_id, analysis)
    return match_id


@pytest.fixture
def upload_ready(fake_storage, dispatched):
    return fake_storage, dispatched


# ============================================================================
# Challenge creation
# ============================================================================


class TestCreateChallenge:
    @pytest.mark.asyncio
    async def test_creates_pending_challenge(self, db_session, players, venue):
        challenger, opponent = players
        before = utcnow()
        result = await match_service.create_challenge(db_session, challenger.id, opponent.id, venue.id)

        assert result["success"] is True
        assert result["status"] == "pending"
        match = await match_service.get_match(db_session, result["match_id"])
        assert match.player1_id == challenger.id
        assert match.player2_id == opponent.id
        assert match.status == MatchStatus.PENDING
        assert match.recording_by is None
        expires_at = match_service.ensure_utc(match.expires_at)
        assert timedelta(seconds=110) < expires_at - before < timedelta(seconds=130)

    @pytest.mark.asyncio
    async def test_cannot_challenge_self(self, db_session, players, venue):
        challenger, _ = players
        result = await match_service.create_challenge(db_session, challenger.id, challenger.id, venue.id)
        assert result["success"] is False
        assert result["error"] == "invalid"

    @pytest.mark.asyncio
    async def test_unknown_venue(self, db_session, players):
        challenger, opponent = players
        result = await match_service.create_challenge(db_session, challenger.id, opponent.id, 999)
        assert result["error"] == "not_found"
        assert result["message"] == "Venue not found"

    @pytest.mark.asyncio
    async def test_unknown_opponent(self, db_session, players, venue):
        challenger, _ = players
        result = await match_service.create_challenge(db_session, challenger.id, 999, venue.id)
        assert result["error"] == "not_found"
        assert result["message"] == "Opponent not found"

    @pytest.mark.asyncio
    async def test_duplicate_active_pair_rejected_in_both_directions(self, db_session, players, venue):
        challenger, opponent = players
        await _challenge(db_session, challenger, opponent, venue)

        again = await match_service.create_challenge(db_session, challenger.id, opponent.id, venue.id)
        reverse = await match_service.create_challenge(db_session, opponent.id, challenger.id, venue.id)

        assert again["error"] == "conflict"
        assert reverse["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_simultaneous_challenges_for_same_pair(self, db_session, players, venue, monkeypatch):
        """Both requests pass the pre-check; the active-pair index rejects the second."""
        challenger, opponent = players

        async def no_active_match(session, user_a, user_b):
            return False

        monkeypatch.setattr(match_service, "has_active_match", no_active_match)

        first = await match_service.create_challenge(db_session, challenger.id, opponent.id, venue.id)
        second = await match_service.create_challenge(db_session, opponent.id, challenger.id, venue.id)

        assert first["success"] is True
        assert second == {
            "success": False,
            "error": "conflict",
            "message": "Already have an active challenge with this player",
        }
        count = await db_session.execute(select(func.count(Match.id)))
        assert count.scalar() == 1

    @pytest.mark.asyncio
    async def test_new_challenge_allowed_after_decline(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)
        await match_service.respond_to_challenge(db_session, match_id, opponent.id, False)

        result = await match_service.create_challenge(db_session, challenger.id, opponent.id, venue.id)
        assert result["success"] is True


# ============================================================================
# Responding / cancelling
# ============================================================================


class TestRespondToChallenge:
    @pytest.mark.asyncio
    async def test_accept(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.respond_to_challenge(db_session, match_id, opponent.id, True)

        assert result == {"success": True, "status": "accepted", "message": "Challenge accepted"}

    @pytest.mark.asyncio
    async def test_decline(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.respond_to_challenge(db_session, match_id, opponent.id, False)

        assert result["status"] == "declined"
        assert (await match_service.get_match(db_session, match_id)).status == MatchStatus.DECLINED

    @pytest.mark.asyncio
    async def test_challenger_cannot_respond(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.respond_to_challenge(db_session, match_id, challenger.id, True)

        assert result["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_second_response_rejected(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _accepted(db_session, challenger, opponent, venue)

        result = await match_service.respond_to_challenge(db_session, match_id, opponent.id, False)

        assert result["error"] == "conflict"
        assert result["message"] == "Challenge already responded to"

    @pytest.mark.asyncio
    async def test_expired_challenge_is_cancelled(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)
        await db_session.execute(
            update(Match)
            .where(Match.id == match_id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await db_session.commit()

        result = await match_service.respond_to_challenge(db_session, match_id, opponent.id, True)

        assert result["error"] == "expired"
        assert (await match_service.get_match(db_session, match_id)).status == MatchStatus.CANCELLED
        # The pair is free to play again
        again = await match_service.create_challenge(db_session, challenger.id, opponent.id, venue.id)
        assert again["success"] is True

    @pytest.mark.asyncio
    async def test_unknown_match(self, db_session, players):
        _, opponent = players
        result = await match_service.respond_to_challenge(db_session, 4242, opponent.id, True)
        assert result["error"] == "not_found"


class TestCancelChallenge:
    @pytest.mark.asyncio
    async def test_challenger_withdraws(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.cancel_challenge(db_session, match_id, challenger.id)

        assert result["success"] is True
        assert (await match_service.get_match(db_session, match_id)).status == MatchStatus.DECLINED

    @pytest.mark.asyncio
    async def test_opponent_cannot_withdraw(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.cancel_challenge(db_session, match_id, opponent.id)

        assert result["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_accepted_challenge_cannot_be_withdrawn(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _accepted(db_session, challenger, opponent, venue)

        result = await match_service.cancel_challenge(db_session, match_id, challenger.id)

        assert result["error"] == "conflict"


# ============================================================================
# Recording lock
# ============================================================================


class TestRecordingLock:
    @pytest.mark.asyncio
    async def test_start_takes_lock(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _accepted(db_session, challenger, opponent, venue)

        result = await match_service.start_match(db_session, match_id, opponent.id)

        assert result["success"] is True
        assert result["message"] == "Match started. You are recording."
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.IN_PROGRESS
        assert match.recording_by == opponent.id
        assert match.started_at is not None

    @pytest.mark.asyncio
    async def test_recorder_reentry_succeeds(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        result = await match_service.start_match(db_session, match_id, challenger.id)

        assert result["success"] is True
        assert result["message"] == "You are already recording this match"

    @pytest.mark.asyncio
    async def test_other_player_blocked(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        result = await match_service.start_match(db_session, match_id, opponent.id)

        assert result["success"] is False
        assert result["message"] == "Other player is already recording this match"

    @pytest.mark.asyncio
    async def test_cannot_start_pending(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.start_match(db_session, match_id, challenger.id)

        assert result["message"] == "Challenge has not been accepted yet"

    @pytest.mark.asyncio
    async def test_outsider_cannot_start(self, db_session, players, venue):
        challenger, opponent = players
        outsider = await make_user(db_session, "Eve Outsider")
        match_id = await _accepted(db_session, challenger, opponent, venue)

        result = await match_service.start_match(db_session, match_id, outsider.id)

        assert result["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_handoff_via_cancel_recording(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        cancelled = await match_service.cancel_recording(db_session, match_id, challenger.id)
        assert cancelled["success"] is True
        assert cancelled["status"] == "accepted"
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.ACCEPTED
        assert match.recording_by is None
        assert match.started_at is None

        taken = await match_service.start_match(db_session, match_id, opponent.id)
        assert taken["success"] is True
        assert (await match_service.get_match(db_session, match_id)).recording_by == opponent.id

    @pytest.mark.asyncio
    async def test_non_recorder_cannot_cancel_recording(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        result = await match_service.cancel_recording(db_session, match_id, opponent.id)

        assert result["message"] == "You are not the one recording"
        assert (await match_service.get_match(db_session, match_id)).recording_by == challenger.id

    @pytest.mark.asyncio
    async def test_cancel_recording_without_lock_is_noop(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _accepted(db_session, challenger, opponent, venue)

        result = await match_service.cancel_recording(db_session, match_id, opponent.id)

        assert result["success"] is True
        assert result["message"] == "No recording in progress"

    @pytest.mark.asyncio
    async def test_concurrent_starts_yield_one_recorder(self, db_session, players, venue, serialized_writes):
        challenger, opponent = players
        match_id = await _accepted(db_session, challenger, opponent, venue)
        await db_session.commit()

        async def start(user):
            async with db.AsyncSessionLocal() as session:
                return await match_service.start_match(session, match_id, user.id)

        results = await asyncio.gather(start(challenger), start(opponent))

        assert sorted(r["success"] for r in results) == [False, True]
        loser = next(r for r in results if not r["success"])
        assert loser["message"] == "Other player is already recording this match"
        winner = challenger if results[0]["success"] else opponent
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.IN_PROGRESS
        assert match.recording_by == winner.id

    @pytest.mark.asyncio
    async def test_cannot_cancel_after_upload(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        result = await match_service.cancel_recording(db_session, match_id, challenger.id)

        assert result["message"] == "Video already uploaded, cannot cancel"


# ============================================================================
# Upload
# ============================================================================


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_enqueues_analysis(self, db_session, players, venue, upload_ready):
        uploads, dispatched = upload_ready
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        result = await match_service.upload_match_video(
            db_session, match_id, challenger.id, b"video", "video/mp4"
        )

        assert result["success"] is True
        assert result["status"] == "analyzing"
        assert result["video_url"] == VIDEO_URL
        assert uploads == [(match_id, b"video", "video/mp4")]
        assert dispatched == [result["job_id"]]
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.ANALYZING
        assert match.video_url == VIDEO_URL
        job = (await db_session.execute(select(MatchAnalysisJob))).scalar_one()
        assert job.match_id == match_id

    @pytest.mark.asyncio
    async def test_second_upload_rejected(self, db_session, players, venue, upload_ready):
        uploads, dispatched = upload_ready
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        result = await match_service.upload_match_video(
            db_session, match_id, challenger.id, b"again", "video/mp4"
        )

        assert result["success"] is False
        assert result["message"] == match_service.ALREADY_UPLOADED
        assert len(uploads) == 1
        assert len(dispatched) == 1
        count = await db_session.execute(select(func.count(MatchAnalysisJob.id)))
        assert count.scalar() == 1

    @pytest.mark.asyncio
    async def test_non_recorder_cannot_upload(self, db_session, players, venue, upload_ready):
        uploads, _ = upload_ready
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        result = await match_service.upload_match_video(
            db_session, match_id, opponent.id, b"video", "video/mp4"
        )

        assert result["message"] == "Only the recording player can upload the video"
        assert uploads == []

    @pytest.mark.asyncio
    async def test_upload_requires_in_progress(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _accepted(db_session, challenger, opponent, venue)

        result = await match_service.upload_match_video(
            db_session, match_id, challenger.id, b"video", "video/mp4"
        )

        assert result["message"] == "Match not in progress"

    @pytest.mark.asyncio
    async def test_storage_failure_releases_upload_slot(self, db_session, players, venue, dispatched, monkeypatch):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        def broken_upload(*args):
            raise RuntimeError("S3 unavailable")

        monkeypatch.setattr(storage_service, "upload_match_video", broken_upload)

        with pytest.raises(RuntimeError):
            await match_service.upload_match_video(
                db_session, match_id, challenger.id, b"video", "video/mp4"
            )

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.IN_PROGRESS
        assert match.video_url is None
        assert dispatched == []


    @pytest.mark.asyncio
    async def test_concurrent_uploads_store_once(self, db_session, players, venue, upload_ready, serialized_writes):
        uploads, dispatched = upload_ready
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)
        await db_session.commit()

        async def upload():
            async with db.AsyncSessionLocal() as session:
                return await match_service.upload_match_video(
                    session, match_id, challenger.id, b"video", "video/mp4"
                )

        results = await asyncio.gather(upload(), upload())

        assert sorted(r["success"] for r in results) == [False, True]
        assert next(r for r in results if not r["success"])["message"] == match_service.ALREADY_UPLOADED
        jobs = await db_session.execute(
            select(func.count(MatchAnalysisJob.id)).where(MatchAnalysisJob.match_id == match_id)
        )
        assert jobs.scalar() == 1
        assert len(uploads) == 1
        assert len(dispatched) == 1

    @pytest.mark.asyncio
    async def test_cancelled_upload_releases_slot(self, db_session, players, venue, dispatched, monkeypatch):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)

        def interrupted_upload(*args):
            raise asyncio.CancelledError()

        monkeypatch.setattr(storage_service, "upload_match_video", interrupted_upload)

        with pytest.raises(asyncio.CancelledError):
            await match_service.upload_match_video(
                db_session, match_id, challenger.id, b"video", "video/mp4"
            )

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.IN_PROGRESS
        assert match.upload_started_at is None

        monkeypatch.setattr(storage_service, "upload_match_video", lambda *args: VIDEO_URL)
        retry = await match_service.upload_match_video(
            db_session, match_id, challenger.id, b"video", "video/mp4"
        )
        assert retry["success"] is True
        assert len(dispatched) == 1

    @pytest.mark.asyncio
    async def test_abandoned_upload_released_by_sweep(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)
        assert (await match_service.begin_upload(db_session, match_id, challenger.id))["success"]
        # Process died mid-upload twenty minutes ago
        await db_session.execute(
            update(Match)
            .where(Match.id == match_id)
            .values(upload_started_at=utcnow() - timedelta(minutes=20))
        )
        await db_session.commit()

        assert await match_service.release_stale_uploads(db_session) == 1

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.IN_PROGRESS
        assert match.upload_started_at is None
        result = await match_service.cancel_recording(db_session, match_id, challenger.id)
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_sweep_leaves_recent_upload_alone(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue)
        await match_service.begin_upload(db_session, match_id, challenger.id)

        assert await match_service.release_stale_uploads(db_session) == 0
        assert (await match_service.get_match(db_session, match_id)).status == MatchStatus.UPLOADING


# ============================================================================
# Analysis outcome
# ============================================================================


class TestFinalizeAnalysis:
    @pytest.mark.asyncio
    async def test_scored_result(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        assert await match_service.finalize_analysis(db_session, match_id, SCORED) is True

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.COMPLETED
        assert (match.player1_score, match.player2_score) == (11, 7)
        assert match.winner_id == challenger.id
        assert (match.winner_xp, match.winner_rp, match.loser_xp) == (140, 28, 50)
        assert match.analysis_confidence == pytest.approx(0.9)
        assert match.completed_at is not None

    @pytest.mark.asyncio
    async def test_tie(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        await match_service.finalize_analysis(
            db_session, match_id, {"player1_score": 9, "player2_score": 9}
        )

        match = await match_service.get_match(db_session, match_id)
        assert match.winner_id is None
        assert match.loser_xp == 50
        assert match.winner_rp == 0

    @pytest.mark.asyncio
    async def test_scoreless_when_no_analysis(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        await match_service.finalize_analysis(db_session, match_id, None)

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.COMPLETED
        assert match.player1_score is None
        assert match.winner_id is None
        assert (match.winner_xp, match.winner_rp, match.loser_xp) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_second_finalize_is_ignored(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)

        applied = await match_service.finalize_analysis(
            db_session, match_id, {"player1_score": 0, "player2_score": 11}
        )

        assert applied is False
        assert (await match_service.get_match(db_session, match_id)).winner_id == challenger.id

    @pytest.mark.asyncio
    async def test_disputed_during_analysis_keeps_scores_for_review(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)
        await match_service.dispute_match(db_session, match_id, opponent.id, reason="Wrong player")

        assert await match_service.finalize_analysis(db_session, match_id, SCORED) is False

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.DISPUTED
        assert (match.player1_score, match.player2_score) == (11, 7)
        assert match.winner_id == challenger.id
        assert match.completed_at is None
        assert match.stats_applied is False

    @pytest.mark.asyncio
    async def test_disputed_after_completion_not_overwritten(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)
        await match_service.dispute_match(db_session, match_id, opponent.id, reason="Wrong score")

        applied = await match_service.finalize_analysis(
            db_session, match_id, {"player1_score": 2, "player2_score": 11}
        )

        assert applied is False
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.DISPUTED
        assert (match.player1_score, match.player2_score) == (11, 7)

    @pytest.mark.asyncio
    async def test_scoreless_result_not_recorded_on_disputed_match(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)
        await match_service.dispute_match(db_session, match_id, challenger.id)

        assert await match_service.finalize_analysis(db_session, match_id, None) is False

        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.DISPUTED
        assert match.player1_score is None


# ============================================================================
# Agreement and dispute
# ============================================================================


class TestAgreement:
    @pytest.mark.asyncio
    async def test_first_agreement_waits_for_opponent(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)

        result = await match_service.submit_agreement(db_session, match_id, challenger.id, True)

        assert result == {
            "success": True,
            "both_agreed": False,
            "status": "completed",
            "message": "Waiting for opponent",
        }
        stats = await player_stats(db_session, challenger.id)
        assert stats["matches_played"] == 0

    @pytest.mark.asyncio
    async def test_both_agree_applies_stats_once(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)

        await match_service.submit_agreement(db_session, match_id, challenger.id, True)
        result = await match_service.submit_agreement(db_session, match_id, opponent.id, True)
        # Repeated agreement must not pay out again
        await match_service.submit_agreement(db_session, match_id, opponent.id, True)
        await match_service.submit_agreement(db_session, match_id, challenger.id, True)

        assert result["both_agreed"] is True
        assert result["message"] == "Match finalized"
        winner = await player_stats(db_session, challenger.id)
        loser = await player_stats(db_session, opponent.id)
        assert winner == {
            "total_xp": 140,
            "total_rp": 28,
            "available_rp": 28,
            "matches_played": 1,
            "matches_won": 1,
            "matches_lost": 0,
        }
        assert loser["total_xp"] == 50
        assert loser["total_rp"] == 0
        assert loser["matches_played"] == 1
        assert loser["matches_lost"] == 1
        assert (await match_service.get_match(db_session, match_id)).stats_applied is True

    @pytest.mark.asyncio
    async def test_stats_accumulate_across_matches(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        for _ in range(2):
            match_id = await _completed(db_session, challenger, opponent, venue)
            await match_service.submit_agreement(db_session, match_id, challenger.id, True)
            await match_service.submit_agreement(db_session, match_id, opponent.id, True)

        winner = await player_stats(db_session, challenger.id)
        assert winner["matches_won"] == 2
        assert winner["total_xp"] == 280

    @pytest.mark.asyncio
    async def test_tie_pays_both_players(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(
            db_session, challenger, opponent, venue,
            analysis={"player1_score": 5, "player2_score": 5},
        )

        await match_service.submit_agreement(db_session, match_id, challenger.id, True)
        await match_service.submit_agreement(db_session, match_id, opponent.id, True)

        for user in (challenger, opponent):
            stats = await player_stats(db_session, user.id)
            assert stats["matches_played"] == 1
            assert stats["matches_won"] == 0
            assert stats["matches_lost"] == 0
            assert stats["total_xp"] == 50
            assert stats["total_rp"] == 0

    @pytest.mark.asyncio
    async def test_disagree_disputes(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)

        result = await match_service.submit_agreement(db_session, match_id, opponent.id, False)

        assert result["status"] == "disputed"
        assert result["both_agreed"] is False
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.DISPUTED
        assert match.disputed_by == opponent.id

    @pytest.mark.asyncio
    async def test_agreement_before_completion_rejected(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        result = await match_service.submit_agreement(db_session, match_id, challenger.id, True)

        assert result["success"] is False
        assert result["message"] == "Match not ready for agreement"

    @pytest.mark.asyncio
    async def test_outsider_cannot_agree(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        outsider = await make_user(db_session, "Eve Outsider")
        match_id = await _completed(db_session, challenger, opponent, venue)

        result = await match_service.submit_agreement(db_session, match_id, outsider.id, True)

        assert result["error"] == "forbidden"


class TestDispute:
    @pytest.mark.asyncio
    async def test_dispute_completed_match(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)

        result = await match_service.dispute_match(
            db_session, match_id, opponent.id, reason="x" * 60, details="Score is off by two"
        )

        assert result["success"] is True
        match = await match_service.get_match(db_session, match_id)
        assert match.status == MatchStatus.DISPUTED
        assert match.dispute_reason == "x" * 50
        assert match.dispute_details == "Score is off by two"

    @pytest.mark.asyncio
    async def test_dispute_twice_rejected(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)
        await match_service.dispute_match(db_session, match_id, opponent.id)

        result = await match_service.dispute_match(db_session, match_id, challenger.id)

        assert result["message"] == "Match already disputed"

    @pytest.mark.asyncio
    async def test_cannot_dispute_after_stats_applied(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)
        await match_service.submit_agreement(db_session, match_id, challenger.id, True)
        await match_service.submit_agreement(db_session, match_id, opponent.id, True)

        result = await match_service.dispute_match(db_session, match_id, opponent.id)

        assert result["success"] is False
        assert result["message"] == "Match already finalized"

    @pytest.mark.asyncio
    async def test_cannot_dispute_pending(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.dispute_match(db_session, match_id, opponent.id)

        assert result["message"] == "Match cannot be disputed in its current state"


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    @pytest.mark.asyncio
    async def test_snapshot_roles(self, db_session, players, venue):
        challenger, opponent = players
        match_id = await _recording(db_session, challenger, opponent, venue, recorder=opponent)

        as_challenger = await match_service.get_match_snapshot(db_session, match_id, challenger.id)
        as_opponent = await match_service.get_match_snapshot(db_session, match_id, opponent.id)

        assert as_challenger["role"] == "challenger"
        assert as_challenger["is_challenger"] is True
        assert as_challenger["is_recorder"] is False
        assert as_opponent["role"] == "opponent"
        assert as_opponent["is_recorder"] is True
        assert as_opponent["match"]["venue_name"] == "Alex Court"
        assert as_opponent["match"]["player1"]["name"] == "Alice King"

    @pytest.mark.asyncio
    async def test_snapshot_hidden_from_outsiders(self, db_session, players, venue):
        challenger, opponent = players
        outsider = await make_user(db_session, "Eve Outsider")
        match_id = await _challenge(db_session, challenger, opponent, venue)

        result = await match_service.get_match_snapshot(db_session, match_id, outsider.id)

        assert result["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_results_while_analyzing(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _analyzing(db_session, challenger, opponent, venue)

        result = await match_service.get_match_results(db_session, match_id, opponent.id)

        assert result == {"success": True, "status": "analyzing", "analyzing": True, "result": None}

    @pytest.mark.asyncio
    async def test_results_from_each_side(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue)
        await match_service.submit_agreement(db_session, match_id, opponent.id, True)

        winner_view = (await match_service.get_match_results(db_session, match_id, challenger.id))["result"]
        loser_view = (await match_service.get_match_results(db_session, match_id, opponent.id))["result"]

        assert winner_view["is_winner"] is True
        assert winner_view["user_score"] == 11
        assert winner_view["opponent_score"] == 7
        assert winner_view["xp_earned"] == 140
        assert winner_view["rp_earned"] == 28
        assert winner_view["opponent_agreed"] is True
        assert winner_view["user_agreed"] is False
        assert winner_view["opponent"]["name"] == "Bob Court"

        assert loser_view["is_winner"] is False
        assert loser_view["user_score"] == 7
        assert loser_view["xp_earned"] == 50
        assert loser_view["rp_earned"] == 0
        assert loser_view["is_tie"] is False
        assert loser_view["scored"] is True

    @pytest.mark.asyncio
    async def test_results_for_scoreless_match(self, db_session, players, venue, upload_ready):
        challenger, opponent = players
        match_id = await _completed(db_session, challenger, opponent, venue, analysis=None)

        result = (await match_service.get_match_results(db_session, match_id, challenger.id))["result"]

        assert result["scored"] is False
        assert result["is_winner"] is False
        assert result["xp_earned"] == 0

    @pytest.mark.asyncio
    async def test_history_newest_first(self, db_session, players, venue):
        challenger, opponent = players
        third = await make_user(db_session, "Finn Fade")
        first_id = await _challenge(db_session, challenger, opponent, venue)
        second_id = await _challenge(db_session, third, challenger, venue)

        history = await match_service.get_match_history(db_session, challenger.id)

        assert [m["id"] for m in history] == [second_id, first_id]
        assert history[0]["role"] == "opponent"
        assert history[0]["opponent"]["name"] == "Finn Fade"
        assert history[1]["role"] == "challenger"

    @pytest.mark.asyncio
    async def test_history_limit_clamped(self, db_session, players, venue):
        challenger, opponent = players
        other_venue = await make_venue(db_session, "Second Court")
        await _challenge(db_session, challenger, opponent, venue)
        third = await make_user(db_session, "Gus Gym")
        await _challenge(db_session, challenger, third, other_venue)

        assert len(await match_service.get_match_history(db_session, challenger.id, limit=1)) == 1
        assert len(await match_service.get_match_history(db_session, challenger.id, limit=0)) == 1
        assert len(await match_service.get_match_history(db_session, challenger.id, limit=500)) == 2
