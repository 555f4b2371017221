"""Health check route handler."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.db import get_db_session
from kickoff.services import redis_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/health")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """Health check endpoint: database reachability plus relay mode."""
    try:
        await session.execute(text("SELECT 1"))
        realtime = "redis" if await redis_service.is_redis_available() else "local"
        return {"status": "healthy", "message": "API is running", "realtime": realtime}
    except Exception as e:
        logger.warning(f"Health check failed: {e}")
        return {"status": "unhealthy", "message": f"Error: {str(e)}"}
