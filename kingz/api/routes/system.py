"""Health check and operator route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from kingz.api.auth_dependencies import require_user
from kingz.database.db import get_db_session
from kingz.services.analysis_queue import get_analysis_queue

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/health")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    Health check endpoint.

    Returns:
        dict: Service status
    """
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "healthy", "message": "API is running"}
    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Database unavailable")


@router.get("/api/analysis-queue/status")
async def analysis_queue_status(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Running/pending analysis jobs and recent failures."""
    try:
        return await get_analysis_queue().get_queue_status(session)
    except Exception as e:
        logger.error(f"Error getting analysis queue status: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting analysis queue status")


@router.get("/api/analysis-queue/jobs/{job_id}")
async def analysis_job_status(
    job_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Status of a single analysis job."""
    try:
        job = await get_analysis_queue().get_job_status(session, job_id)
    except Exception as e:
        logger.error(f"Error getting analysis job {job_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting analysis job status")
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
