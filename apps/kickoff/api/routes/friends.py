"""Friend system route handlers."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.db import get_db_session
from kickoff.services import friend_service
from kickoff.api.auth_dependencies import require_user
from kickoff.api.routes import limiter, handle_service_error
from kickoff.models.schemas import FriendRequestCreate, FriendRequestRespond

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/friends/request", status_code=201)
@limiter.limit("20/minute")
async def send_friend_request(
    request: Request,
    payload: FriendRequestCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Send a friend request to another user."""
    try:
        return await friend_service.send_friend_request(session, user["id"], payload.friend_id)
    except Exception as e:
        raise handle_service_error(e, "sending friend request")


@router.post("/api/friends/requests/{request_id}/respond")
async def respond_to_friend_request(
    request_id: int,
    payload: FriendRequestRespond,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Accept or reject a pending friend request."""
    try:
        return await friend_service.respond_to_friend_request(
            session, request_id, user["id"], payload.status
        )
    except Exception as e:
        raise handle_service_error(e, "responding to friend request")


@router.get("/api/friends")
async def list_friends(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    try:
        friends = await friend_service.list_friends(session, user["id"])
        return {"friends": friends, "total_count": len(friends)}
    except Exception as e:
        raise handle_service_error(e, "listing friends")


@router.get("/api/friends/requests")
async def list_friend_requests(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    try:
        return await friend_service.list_pending_requests(session, user["id"])
    except Exception as e:
        raise handle_service_error(e, "listing friend requests")


@router.delete("/api/friends/{friendship_id}", status_code=204)
async def remove_friend(
    friendship_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        await friend_service.remove_friend(session, user["id"], friendship_id)
    except Exception as e:
        raise handle_service_error(e, "removing friend")
