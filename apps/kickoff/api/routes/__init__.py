"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, error translation) lives here; every
sub-router imports what it needs from this package.
"""

import logging
import os

from fastapi import APIRouter, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.exc import InterfaceError, OperationalError

from kickoff.services.errors import DomainError, UnavailableError

logger = logging.getLogger(__name__)

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
# Service error translation
# ---------------------------------------------------------------------------
def handle_service_error(error: Exception, action: str) -> HTTPException:
    """
    Translate a service-layer exception into an HTTPException.

    Domain errors keep their kind and status; lost storage connections
    become 503 so clients retry; anything else is logged and becomes 500.
    """
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, DomainError):
        return HTTPException(status_code=error.status_code, detail=error.to_dict())
    if isinstance(error, (OperationalError, InterfaceError)):
        logger.warning(f"Storage unavailable while {action}: {error}")
        unavailable = UnavailableError("Storage is temporarily unavailable, please retry")
        return HTTPException(status_code=unavailable.status_code, detail=unavailable.to_dict())
    logger.error(f"Error {action}: {error}", exc_info=True)
    return HTTPException(
        status_code=500,
        detail={"kind": "internal_error", "message": f"Error {action}"},
    )


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from kickoff.api.routes.fields import router as fields_router  # noqa: E402
from kickoff.api.routes.games import router as games_router  # noqa: E402
from kickoff.api.routes.friends import router as friends_router  # noqa: E402
from kickoff.api.routes.notifications import router as notifications_router  # noqa: E402
from kickoff.api.routes.devices import router as devices_router  # noqa: E402
from kickoff.api.routes.health import router as health_router  # noqa: E402

router = APIRouter()
router.include_router(fields_router)
router.include_router(games_router)
router.include_router(friends_router)
router.include_router(notifications_router)
router.include_router(devices_router)
router.include_router(health_router)
