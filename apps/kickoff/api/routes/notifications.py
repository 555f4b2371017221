"""Notification and WebSocket route handlers."""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.db import get_db_session
from kickoff.services import auth_service, notification_service
from kickoff.services.errors import UnauthenticatedError
from kickoff.services.websocket_manager import get_websocket_manager, WEBSOCKET_TIMEOUT_SECONDS
from kickoff.api.auth_dependencies import require_user
from kickoff.api.routes import handle_service_error
from kickoff.models.schemas import (
    NotificationResponse,
    NotificationListResponse,
    UnreadCountResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/notifications", response_model=NotificationListResponse)
async def get_notifications(
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get user notifications with pagination."""
    try:
        return await notification_service.get_user_notifications(
            session, user["id"], limit=limit, offset=offset, unread_only=unread_only
        )
    except Exception as e:
        raise handle_service_error(e, "fetching notifications")


@router.get("/api/notifications/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Get unread notification count for user."""
    try:
        count = await notification_service.get_unread_count(session, user["id"])
        return {"count": count}
    except Exception as e:
        raise handle_service_error(e, "fetching unread count")


@router.put("/api/notifications/mark-all-read")
async def mark_all_notifications_as_read(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Mark all user notifications as read."""
    try:
        count = await notification_service.mark_all_as_read(session, user["id"])
        return {"success": True, "count": count}
    except Exception as e:
        raise handle_service_error(e, "marking all notifications as read")


@router.get("/api/notifications/{notification_id}", response_model=NotificationResponse)
async def get_notification(
    notification_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await notification_service.get_notification(session, notification_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "fetching notification")


@router.put("/api/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_as_read(
    notification_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Mark a single notification as read."""
    try:
        return await notification_service.mark_as_read(session, notification_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "marking notification as read")


# Consecutive server pings a client may leave unanswered before it is dropped
MAX_MISSED_PINGS = 1


async def _authenticate_socket(websocket: WebSocket):
    """Resolve the ?token= query parameter; closes the socket (1008) and returns None on failure."""
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=1008, reason="Missing authentication token")
        return None
    try:
        return auth_service.resolve_identity(token)["user_id"]
    except UnauthenticatedError as e:
        await websocket.close(code=1008, reason=e.message)
        return None


@router.websocket("/api/ws/notifications")
async def websocket_notifications(websocket: WebSocket):
    """
    Live notification stream.

    Authenticate with ?token=<jwt>. The server pushes notification events as
    JSON. Either side may send the text "ping"; the client answers server
    pings with "pong" or any other message. A client that stays silent for
    WEBSOCKET_TIMEOUT_SECONDS after a server ping is disconnected.
    """
    await websocket.accept()
    user_id = await _authenticate_socket(websocket)
    if user_id is None:
        return

    manager = get_websocket_manager()
    await manager.connect(user_id, websocket)
    missed_pings = 0

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                if missed_pings >= MAX_MISSED_PINGS:
                    logger.info(f"WebSocket timeout for user {user_id}, closing connection")
                    await websocket.close(code=1000, reason="Connection timeout")
                    break
                missed_pings += 1
                await websocket.send_text("ping")
                continue

            missed_pings = 0
            await manager.update_activity(websocket)
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id}")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        await manager.disconnect(user_id, websocket)
