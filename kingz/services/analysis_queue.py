"""
Match video analysis queue.

Database-backed queue for scoring uploaded match videos:
- One job per match (unique match_id), inserted in the same transaction that
  stamps the video URL
- Jobs are dispatched as asyncio tasks so the upload request returns at once
- Transient oracle errors are retried; exhausted or empty analysis completes the
  match scoreless so it never stays stuck in analyzing
- A background worker picks up pending jobs left over after a restart
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.database import db
from kingz.database.models import AnalysisJobStatus, MatchAnalysisJob
from kingz.services import storage_service
from kingz.utils.constants import (
    ANALYSIS_POLL_INTERVAL_SECONDS,
    ANALYSIS_RETRY_DELAY_SECONDS,
    ANALYSIS_STALE_RUNNING_MINUTES,
    MAX_ANALYSIS_ATTEMPTS,
)
from kingz.utils.datetime_utils import utcnow, isoformat_or_none

logger = logging.getLogger(__name__)

Analyzer = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


async def enqueue_analysis(session: AsyncSession, match_id: int, video_url: str) -> int:
    """
    Insert a pending analysis job. Does not commit.

    Returns:
        Job ID
    """
    job = MatchAnalysisJob(
        match_id=match_id,
        video_url=video_url,
        status=AnalysisJobStatus.PENDING,
    )
    session.add(job)
    await session.flush()
    return job.id


class MatchAnalysisQueue:
    """Runs analysis jobs and finalises their matches."""

    def __init__(self):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._analyzer: Optional[Analyzer] = None
        self.retry_delay_seconds = ANALYSIS_RETRY_DELAY_SECONDS
        self.poll_interval_seconds = ANALYSIS_POLL_INTERVAL_SECONDS

    def register_analyzer(self, analyzer: Analyzer) -> None:
        """
        Register the oracle callback (video_url -> analysis dict or None).

        Raises:
            TypeError: If analyzer is not callable
        """
        if not callable(analyzer):
            raise TypeError("analyzer must be callable")
        if self._analyzer is not None:
            logger.warning("Re-registering match analyzer (previous analyzer will be replaced)")
        self._analyzer = analyzer

    def _get_analyzer(self) -> Analyzer:
        if self._analyzer is None:
            from kingz.services import video_analysis_service
            return video_analysis_service.analyze_match_video
        return self._analyzer

    def dispatch(self, job_id: int) -> asyncio.Task:
        """Run a job in the background; the caller does not wait for it."""
        task = asyncio.create_task(self.run_job(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _claim_job(self, session: AsyncSession, job_id: int) -> Optional[MatchAnalysisJob]:
        """pending -> running. Returns the job, or None if someone else claimed it."""
        result = await session.execute(
            update(MatchAnalysisJob)
            .where(
                and_(
                    MatchAnalysisJob.id == job_id,
                    MatchAnalysisJob.status == AnalysisJobStatus.PENDING,
                )
            )
            .values(
                status=AnalysisJobStatus.RUNNING,
                started_at=utcnow(),
                attempts=MatchAnalysisJob.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount != 1:
            return None

        job_result = await session.execute(
            select(MatchAnalysisJob)
            .where(MatchAnalysisJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return job_result.scalar_one_or_none()

    async def _set_attempts(self, session: AsyncSession, job_id: int, attempts: int) -> None:
        await session.execute(
            update(MatchAnalysisJob)
            .where(MatchAnalysisJob.id == job_id)
            .values(attempts=attempts)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def _finish_job(
        self,
        session: AsyncSession,
        job_id: int,
        status: AnalysisJobStatus,
        error_message: Optional[str] = None,
    ) -> None:
        await session.execute(
            update(MatchAnalysisJob)
            .where(MatchAnalysisJob.id == job_id)
            .values(status=status, completed_at=utcnow(), error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.info(f"Analysis job {job_id} {status.value}")

    async def _analyze_with_retries(
        self, session: AsyncSession, job_id: int, match_id: int, video_url: str, attempts: int
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str], int]:
        """Call the oracle, retrying exceptions. Returns (analysis, last_error, attempts)."""
        analyzer = self._get_analyzer()
        last_error = None
        while True:
            try:
                return await analyzer(video_url), None, attempts
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.error(
                    f"Analysis attempt {attempts} for match {match_id} failed: {e}",
                    exc_info=True,
                )
            if attempts >= MAX_ANALYSIS_ATTEMPTS:
                return None, last_error, attempts
            await asyncio.sleep(self.retry_delay_seconds)
            attempts += 1
            await self._set_attempts(session, job_id, attempts)

    async def run_job(self, job_id: int) -> None:
        """
        Run one analysis job end to end.

        Never raises: every failure path finalises the match (scoreless) and
        marks the job failed.
        """
        from kingz.services import match_service

        async with db.AsyncSessionLocal() as session:
            match_id = None
            try:
                job = await self._claim_job(session, job_id)
                if job is None:
                    logger.info(f"Analysis job {job_id} already claimed or missing")
                    return
                # A rollback below expires the instance; keep plain values
                match_id, video_url = job.match_id, job.video_url

                analysis, error, attempts = await self._analyze_with_retries(
                    session, job_id, match_id, video_url, job.attempts
                )

                audit = {
                    "match_id": match_id,
                    "video_url": video_url,
                    "analyzed_at": utcnow().isoformat(),
                    "attempts": attempts,
                    "error": error,
                    "analysis": analysis,
                }
                await asyncio.to_thread(storage_service.save_match_analysis, match_id, audit)

                await match_service.finalize_analysis(session, match_id, analysis)

                if analysis is None:
                    await self._finish_job(
                        session, job_id, AnalysisJobStatus.FAILED,
                        error_message=error or "Analysis returned no result",
                    )
                else:
                    await self._finish_job(session, job_id, AnalysisJobStatus.COMPLETED)

            except Exception as e:
                logger.error(f"Error processing analysis job {job_id}: {e}", exc_info=True)
                await session.rollback()
                if match_id is not None:
                    try:
                        await match_service.finalize_analysis(session, match_id, None)
                        await self._finish_job(
                            session, job_id, AnalysisJobStatus.FAILED, error_message=str(e)
                        )
                    except Exception as inner:
                        logger.error(
                            f"Could not mark analysis job {job_id} failed: {inner}", exc_info=True
                        )

    async def requeue_stale_jobs(self, session: AsyncSession) -> int:
        """Put running jobs orphaned by a restart back to pending."""
        cutoff = utcnow() - timedelta(minutes=ANALYSIS_STALE_RUNNING_MINUTES)
        result = await session.execute(
            update(MatchAnalysisJob)
            .where(
                and_(
                    MatchAnalysisJob.status == AnalysisJobStatus.RUNNING,
                    MatchAnalysisJob.started_at < cutoff,
                )
            )
            .values(status=AnalysisJobStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} orphaned analysis job(s)")
        return result.rowcount or 0

    async def _get_first_pending_job_id(self, session: AsyncSession) -> Optional[int]:
        result = await session.execute(
            select(MatchAnalysisJob.id)
            .where(MatchAnalysisJob.status == AnalysisJobStatus.PENDING)
            .order_by(MatchAnalysisJob.created_at.asc(), MatchAnalysisJob.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _release_stale_uploads(self) -> None:
        from kingz.services import match_service

        try:
            async with db.AsyncSessionLocal() as session:
                await match_service.release_stale_uploads(session)
        except Exception as e:
            logger.error(f"Could not release abandoned uploads: {e}", exc_info=True)

    async def _process_queue_worker(self) -> None:
        """
        Background worker that runs pending jobs not picked up by dispatch.

        Also releases upload slots abandoned by a crash or a cancelled request,
        which would otherwise never reach the queue.
        """
        try:
            async with db.AsyncSessionLocal() as session:
                await self.requeue_stale_jobs(session)
        except Exception as e:
            logger.error(f"Could not requeue orphaned analysis jobs: {e}", exc_info=True)

        while not self._stop_event.is_set():
            await self._release_stale_uploads()
            job_id = None
            try:
                async with db.AsyncSessionLocal() as session:
                    job_id = await self._get_first_pending_job_id(session)
                if job_id is not None:
                    await self.run_job(job_id)
                    continue
            except Exception as e:
                logger.error(f"Error in analysis queue worker: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.poll_interval_seconds
                )
                break
            except asyncio.TimeoutError:
                pass

    async def get_queue_status(self, session: AsyncSession) -> Dict:
        """Running/pending jobs and recent failures, for operators."""
        result = await session.execute(
            select(MatchAnalysisJob)
            .where(MatchAnalysisJob.status == AnalysisJobStatus.RUNNING)
            .order_by(MatchAnalysisJob.started_at.asc())
        )
        running = result.scalars().all()

        result = await session.execute(
            select(MatchAnalysisJob)
            .where(MatchAnalysisJob.status == AnalysisJobStatus.PENDING)
            .order_by(MatchAnalysisJob.created_at.asc())
        )
        pending = result.scalars().all()

        result = await session.execute(
            select(MatchAnalysisJob)
            .where(MatchAnalysisJob.status == AnalysisJobStatus.FAILED)
            .order_by(MatchAnalysisJob.completed_at.desc())
            .limit(10)
        )
        recent_failed = result.scalars().all()

        return {
            "running": [
                {
                    "id": j.id,
                    "match_id": j.match_id,
                    "attempts": j.attempts,
                    "started_at": isoformat_or_none(j.started_at),
                }
                for j in running
            ],
            "pending": [
                {
                    "id": j.id,
                    "match_id": j.match_id,
                    "created_at": isoformat_or_none(j.created_at),
                }
                for j in pending
            ],
            "recent_failed": [
                {
                    "id": j.id,
                    "match_id": j.match_id,
                    "attempts": j.attempts,
                    "error_message": j.error_message,
                    "completed_at": isoformat_or_none(j.completed_at),
                }
                for j in recent_failed
            ],
        }

    async def get_job_status(self, session: AsyncSession, job_id: int) -> Optional[Dict]:
        """Get status of a specific job."""
        result = await session.execute(
            select(MatchAnalysisJob).where(MatchAnalysisJob.id == job_id)
        )
        job = result.scalar_one_or_none()
        if not job:
            return None

        return {
            "id": job.id,
            "match_id": job.match_id,
            "status": job.status.value,
            "attempts": job.attempts,
            "created_at": isoformat_or_none(job.created_at),
            "started_at": isoformat_or_none(job.started_at),
            "completed_at": isoformat_or_none(job.completed_at),
            "error_message": job.error_message,
        }

    def start_background_worker(self) -> None:
        """Start the background worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._process_queue_worker())
            logger.info("Match analysis worker started")

    def stop_background_worker(self) -> None:
        """Stop the background worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Match analysis worker stopped")


# Global queue instance
_analysis_queue = MatchAnalysisQueue()


def get_analysis_queue() -> MatchAnalysisQueue:
    """Get the global analysis queue instance."""
    return _analysis_queue
