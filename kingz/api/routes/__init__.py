"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, result mapping) lives here; every sub-router
imports what it needs from this package.
"""

import os
from typing import Dict

from fastapi import APIRouter, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

# ---------------------------------------------------------------------------
# Service result -> HTTP error
# ---------------------------------------------------------------------------
ERROR_STATUS_CODES = {
    "not_found": 404,
    "forbidden": 403,
}


def raise_for_result(result: Dict) -> Dict:
    """Raise an HTTPException for a failed service result, else return it."""
    if not result.get("success"):
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(result.get("error"), 400),
            detail=result.get("message") or "Request failed",
        )
    return result


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from kingz.api.routes.matches import router as matches_router
from kingz.api.routes.venues import router as venues_router
from kingz.api.routes.system import router as system_router

router = APIRouter()
router.include_router(matches_router)
router.include_router(venues_router)
router.include_router(system_router)
