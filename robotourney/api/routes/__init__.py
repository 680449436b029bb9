"""
API routes - combined router from all domain modules.

Shared error translation lives here; every sub-router imports what it
needs from this package.
"""

import logging

from fastapi import APIRouter, HTTPException

from robotourney.utils.exceptions import (
    ConcurrentModificationError,
    InvalidStageError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


def service_error_response(e: Exception, action: str) -> HTTPException:
    """Translate a service-layer exception into the HTTP error to raise."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConcurrentModificationError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvalidStageError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Error {action}: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Error {action}: {str(e)}")


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from robotourney.api.routes.swiss import router as swiss_router  # noqa: E402
from robotourney.api.routes.matches import router as matches_router  # noqa: E402
from robotourney.api.routes.live import router as live_router  # noqa: E402

router = APIRouter()
router.include_router(swiss_router)
router.include_router(matches_router)
router.include_router(live_router)
