"""
Beat the Kingz API Server

FastAPI server for venue check-in and 1v1 video-scored matches.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from kingz.api.routes import router, limiter as routes_limiter
from kingz.database import db
from kingz.services.analysis_queue import get_analysis_queue
from kingz.services.presence_cleanup_service import get_presence_cleanup_service

# Set up logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    logger.info("Starting up Beat the Kingz API...")

    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Register the video analyzer (must be done before starting worker)
    try:
        from kingz.services import video_analysis_service

        get_analysis_queue().register_analyzer(video_analysis_service.analyze_match_video)
        logger.info("✓ Match video analyzer registered")
    except Exception as e:
        logger.error(f"Failed to register match video analyzer: {e}", exc_info=True)

    try:
        get_analysis_queue().start_background_worker()
        logger.info("✓ Match analysis queue worker started")
    except Exception as e:
        logger.error(f"Failed to start match analysis queue worker: {e}", exc_info=True)

    try:
        get_presence_cleanup_service().start()
        logger.info("✓ Presence cleanup worker started")
    except Exception as e:
        logger.error(f"Failed to start presence cleanup worker: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down Beat the Kingz API...")

    try:
        get_analysis_queue().stop_background_worker()
        logger.info("✓ Match analysis queue worker stopped")
    except Exception as e:
        logger.error(f"Error stopping match analysis queue worker: {e}", exc_info=True)

    try:
        get_presence_cleanup_service().stop()
        logger.info("✓ Presence cleanup worker stopped")
    except Exception as e:
        logger.error(f"Error stopping presence cleanup worker: {e}", exc_info=True)


app = FastAPI(
    title="Beat the Kingz API",
    description="Venue check-in, opponent discovery and AI-scored 1v1 matches",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
