"""Game route handlers: organizing, joining, discovery."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.db import get_db_session
from kickoff.services import game_service, discovery_service
from kickoff.api.auth_dependencies import require_user
from kickoff.api.routes import limiter, handle_service_error
from kickoff.models.schemas import (
    GameCreate,
    GameUpdate,
    GameResponse,
    GameListResponse,
    GamePlayersResponse,
    MembershipResponse,
    NearbyFieldGroup,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/games", response_model=GameResponse, status_code=201)
async def create_game(
    payload: GameCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Organize a new game; the caller becomes the organizer."""
    try:
        return await game_service.create_game(session, organizer_id=user["id"], **payload.model_dump())
    except Exception as e:
        raise handle_service_error(e, "creating game")


@router.get("/api/games", response_model=GameListResponse)
async def list_games(
    status: Optional[str] = None,
    field_id: Optional[int] = None,
    organizer_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await game_service.list_games(
            session,
            status=status,
            field_id=field_id,
            organizer_id=organizer_id,
            limit=limit,
            offset=offset,
        )
    except Exception as e:
        raise handle_service_error(e, "listing games")


@router.get("/api/games/nearby", response_model=List[NearbyFieldGroup])
async def find_nearby_games(
    latitude: Optional[str] = None,
    longitude: Optional[str] = None,
    radius: Optional[str] = None,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Open upcoming games within `radius` km of (latitude, longitude), grouped by field.

    Parameters are validated by the service so that missing or malformed
    coordinates produce a validation_error rather than a generic 422.
    """
    try:
        return await discovery_service.find_nearby_games(session, latitude, longitude, radius)
    except Exception as e:
        raise handle_service_error(e, "searching nearby games")


@router.get("/api/games/{game_id}", response_model=GameResponse)
async def get_game(
    game_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await game_service.get_game(session, game_id)
    except Exception as e:
        raise handle_service_error(e, "fetching game")


@router.patch("/api/games/{game_id}", response_model=GameResponse)
async def update_game(
    game_id: int,
    payload: GameUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Update game details (organizer only)."""
    try:
        return await game_service.update_game(
            session, game_id, user["id"], **payload.model_dump(exclude_unset=True)
        )
    except Exception as e:
        raise handle_service_error(e, "updating game")


@router.post("/api/games/{game_id}/join", response_model=MembershipResponse)
@limiter.limit("30/minute")
async def join_game(
    request: Request,
    game_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Join a game as the current user."""
    try:
        return await game_service.join_game(session, game_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "joining game")


@router.post("/api/games/{game_id}/leave", response_model=MembershipResponse)
async def leave_game(
    game_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await game_service.leave_game(session, game_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "leaving game")


@router.post("/api/games/{game_id}/cancel", response_model=GameResponse)
async def cancel_game(
    game_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Cancel a game (organizer only)."""
    try:
        return await game_service.cancel_game(session, game_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "cancelling game")


@router.post("/api/games/{game_id}/complete", response_model=GameResponse)
async def complete_game(
    game_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Mark a game completed (organizer only)."""
    try:
        return await game_service.complete_game(session, game_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "completing game")


@router.get("/api/games/{game_id}/players", response_model=GamePlayersResponse)
async def get_game_players(
    game_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await game_service.get_game_players(session, game_id)
    except Exception as e:
        raise handle_service_error(e, "fetching game players")


@router.delete("/api/games/{game_id}/players/{player_id}", response_model=MembershipResponse)
async def kick_player(
    game_id: int,
    player_id: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Remove a player from the game (organizer only)."""
    try:
        return await game_service.kick_player(session, game_id, player_id, user["id"])
    except Exception as e:
        raise handle_service_error(e, "removing player")
