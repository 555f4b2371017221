"""
Kickoff API Server

FastAPI server for field discovery, game organization and real-time
notifications.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from kickoff.api.routes import router, limiter as routes_limiter
from kickoff.database import db
from kickoff.services import notification_service, redis_service
from kickoff.services.game_completion_service import get_game_completion_service
from kickoff.services.websocket_manager import get_websocket_manager

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up Kickoff API...")

    # Initialize database (create tables if they don't exist)
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Start game completion worker (auto-complete games past their end_time)
    try:
        get_game_completion_service().start()
    except Exception as e:
        logger.error(f"Failed to start game completion worker: {e}", exc_info=True)

    # Start cross-instance notification relay
    try:
        get_websocket_manager().start_listener()
    except Exception as e:
        logger.error(f"Failed to start notification relay listener: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down Kickoff API...")

    # Let in-flight notification fan-outs finish before tearing down connections
    try:
        await notification_service.drain_background_tasks()
    except Exception as e:
        logger.error(f"Error draining notification tasks: {e}", exc_info=True)

    try:
        get_game_completion_service().stop()
    except Exception as e:
        logger.error(f"Error stopping game completion worker: {e}", exc_info=True)

    try:
        get_websocket_manager().stop_listener()
    except Exception as e:
        logger.error(f"Error stopping notification relay listener: {e}", exc_info=True)

    # Close Redis connection
    try:
        await redis_service.close_redis_connection()
    except Exception as e:
        logger.error(f"Error closing Redis connection: {e}", exc_info=True)


app = FastAPI(
    title="Kickoff API",
    description="API for finding fields, organizing games and joining them",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware; origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
