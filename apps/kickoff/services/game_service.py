"""
Game service: capacity and status state machine for games.

Every spot change is a single conditional UPDATE that also rewrites the
derived status ('open' <-> 'full') in the same statement, so
available_spots == total_spots - count(joined memberships) holds for every
committed state. Each operation commits its own unit of work and rolls back
everything on failure.
"""

from datetime import datetime
from typing import Dict, Optional
import logging

from sqlalchemy import select, update, func, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.models import (
    Game,
    Field,
    User,
    GameStatus,
    GameType,
    GamePlayerStatus,
    ACTIVE_GAME_STATUSES,
    TERMINAL_GAME_STATUSES,
)
from kickoff.services import membership_service, notification_service, user_service
from kickoff.services.errors import (
    ValidationError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    CapacityExceededError,
    InvalidStateError,
)
from kickoff.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none

logger = logging.getLogger(__name__)

VALID_GAME_TYPES = {t.value for t in GameType}
MIN_GAME_LEVEL = 1
MAX_GAME_LEVEL = 5
UPDATABLE_GAME_FIELDS = {"game_level", "price_per_player", "start_time", "end_time", "total_spots"}


def _game_to_dict(game: Game) -> Dict:
    return {
        "id": game.id,
        "field_id": game.field_id,
        "organizer_id": game.organizer_id,
        "game_type": game.game_type,
        "game_level": game.game_level,
        "start_time": isoformat_or_none(game.start_time),
        "end_time": isoformat_or_none(game.end_time),
        "total_spots": game.total_spots,
        "available_spots": game.available_spots,
        "price_per_player": float(game.price_per_player) if game.price_per_player is not None else 0.0,
        "status": game.status,
        "created_at": isoformat_or_none(game.created_at),
        "updated_at": isoformat_or_none(game.updated_at),
    }


def _membership_to_dict(membership) -> Dict:
    return {
        "id": membership.id,
        "game_id": membership.game_id,
        "player_id": membership.player_id,
        "joined_at": isoformat_or_none(membership.joined_at),
        "status": membership.status,
    }


def _game_details(game: Game) -> Dict:
    """Payload shared by the game notification helpers."""
    return {"game_id": game.id, "game_type": game.game_type, "start_time": game.start_time}


async def _load_game(session: AsyncSession, game_id: int) -> Game:
    """Fresh read of a game (bypasses stale identity-map state), else NotFoundError."""
    result = await session.execute(
        select(Game).where(Game.id == game_id).execution_options(populate_existing=True)
    )
    game = result.scalar_one_or_none()
    if game is None:
        raise NotFoundError("Game not found")
    return game


def _validate_game_fields(
    game_type: Optional[int],
    game_level: int,
    start_time: datetime,
    end_time: datetime,
    total_spots: int,
    available_spots: int,
    price_per_player: float,
) -> None:
    if game_type is not None and game_type not in VALID_GAME_TYPES:
        raise ValidationError("game_type must be 5 or 7")
    if not isinstance(game_level, int) or not MIN_GAME_LEVEL <= game_level <= MAX_GAME_LEVEL:
        raise ValidationError(f"game_level must be between {MIN_GAME_LEVEL} and {MAX_GAME_LEVEL}")
    if not isinstance(start_time, datetime) or not isinstance(end_time, datetime):
        raise ValidationError("start_time and end_time must be datetimes")
    if ensure_utc(start_time) >= ensure_utc(end_time):
        raise ValidationError("start_time must be before end_time")
    if not isinstance(total_spots, int) or total_spots <= 0:
        raise ValidationError("total_spots must be a positive integer")
    if not isinstance(available_spots, int) or not 0 <= available_spots <= total_spots:
        raise ValidationError("available_spots must be between 0 and total_spots")
    if price_per_player is None or price_per_player < 0:
        raise ValidationError("price_per_player must be zero or positive")


async def create_game(
    session: AsyncSession,
    organizer_id: str,
    field_id: int,
    game_type: int,
    game_level: int,
    start_time: datetime,
    end_time: datetime,
    total_spots: int,
    price_per_player: float = 0,
    available_spots: Optional[int] = None,
) -> Dict:
    """
    Create a game organized by organizer_id.

    Args:
        session: Database session
        organizer_id: ID of the organizing user
        field_id: Field the game is played on
        game_type: 5 or 7 players per side
        game_level: Skill level 1-5
        start_time: Kick-off time
        end_time: Must be after start_time
        total_spots: Capacity (> 0)
        price_per_player: Price per player (>= 0)
        available_spots: Defaults to total_spots

    Returns:
        Game dict

    Raises:
        ValidationError: If the game contract is violated
        NotFoundError: If the field does not exist
    """
    if available_spots is None:
        available_spots = total_spots
    _validate_game_fields(
        game_type, game_level, start_time, end_time, total_spots, available_spots, price_per_player
    )

    field = await session.get(Field, field_id)
    if field is None:
        raise NotFoundError("Field not found")

    game = Game(
        field_id=field_id,
        organizer_id=organizer_id,
        game_type=int(game_type),
        game_level=game_level,
        start_time=ensure_utc(start_time),
        end_time=ensure_utc(end_time),
        total_spots=total_spots,
        available_spots=available_spots,
        price_per_player=price_per_player,
        status=GameStatus.FULL.value if available_spots == 0 else GameStatus.OPEN.value,
    )
    session.add(game)
    try:
        await session.flush()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(game)

    logger.info(f"Game {game.id} created by {organizer_id} on field {field_id} ({total_spots} spots)")
    return _game_to_dict(game)


async def get_game(session: AsyncSession, game_id: int) -> Dict:
    """Game with its field name and organizer name."""
    result = await session.execute(
        select(Game, Field.name, User.display_name)
        .join(Field, Game.field_id == Field.id)
        .outerjoin(User, Game.organizer_id == User.id)
        .where(Game.id == game_id)
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        raise NotFoundError("Game not found")
    game, field_name, organizer_name = row
    return {
        **_game_to_dict(game),
        "field_name": field_name,
        "organizer_name": organizer_name or user_service.DEFAULT_DISPLAY_NAME,
    }


async def list_games(
    session: AsyncSession,
    status: Optional[str] = None,
    field_id: Optional[int] = None,
    organizer_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict:
    """
    List games, soonest first.

    Returns:
        Dict with "games", "total_count" and "has_more"
    """
    if status is not None and status not in {s.value for s in GameStatus}:
        raise ValidationError(f"Unknown game status: {status}")
    if limit <= 0 or offset < 0:
        raise ValidationError("limit must be positive and offset non-negative")

    query = select(Game)
    if status is not None:
        query = query.where(Game.status == status)
    if field_id is not None:
        query = query.where(Game.field_id == field_id)
    if organizer_id is not None:
        query = query.where(Game.organizer_id == organizer_id)

    total_result = await session.execute(select(func.count()).select_from(query.subquery()))
    total_count = total_result.scalar_one() or 0

    result = await session.execute(
        query.order_by(Game.start_time.asc(), Game.id.asc()).limit(limit).offset(offset)
    )
    games = [_game_to_dict(g) for g in result.scalars().all()]
    return {
        "games": games,
        "total_count": total_count,
        "has_more": (offset + len(games)) < total_count,
    }


async def _claim_spot(session: AsyncSession, game_id: int) -> bool:
    """Take one spot from an open game; flips to 'full' on the last spot."""
    result = await session.execute(
        update(Game)
        .where(
            and_(
                Game.id == game_id,
                Game.status == GameStatus.OPEN.value,
                Game.available_spots > 0,
            )
        )
        .values(
            available_spots=Game.available_spots - 1,
            status=case(
                (Game.available_spots == 1, GameStatus.FULL.value),
                else_=GameStatus.OPEN.value,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _release_spot(session: AsyncSession, game_id: int) -> None:
    """Give one spot back; a 'full' game reopens, terminal statuses are kept."""
    result = await session.execute(
        update(Game)
        .where(and_(Game.id == game_id, Game.available_spots < Game.total_spots))
        .values(
            available_spots=Game.available_spots + 1,
            status=case(
                (Game.status == GameStatus.FULL.value, GameStatus.OPEN.value),
                else_=Game.status,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error(f"Spot release for game {game_id} would exceed total_spots")
        raise InvalidStateError("Game capacity is inconsistent")


async def _classify_join_failure(session: AsyncSession, game_id: int) -> Exception:
    result = await session.execute(
        select(Game.status, Game.available_spots).where(Game.id == game_id)
    )
    row = result.first()
    if row is None:
        return NotFoundError("Game not found")
    status, available_spots = row
    if status in TERMINAL_GAME_STATUSES:
        return InvalidStateError(f"Game is {status}")
    return CapacityExceededError("No spots available in this game")


async def join_game(session: AsyncSession, game_id: int, player_id: str) -> Dict:
    """
    Join a game, taking exactly one spot.

    The spot decrement and the membership upsert commit together or not at
    all. Two concurrent joins for the last spot yield one success and one
    CapacityExceededError.

    Args:
        session: Database session
        game_id: ID of the game
        player_id: ID of the joining user

    Returns:
        Membership dict with a "game" snapshot

    Raises:
        NotFoundError: Game does not exist
        InvalidStateError: Game is cancelled or completed
        CapacityExceededError: No spot left
        ConflictError: Player already joined
    """
    game = await _load_game(session, game_id)
    if game.status in TERMINAL_GAME_STATUSES:
        raise InvalidStateError(f"Game is {game.status}")
    if game.available_spots <= 0:
        raise CapacityExceededError("No spots available in this game")

    existing = await membership_service.get_membership(session, game_id, player_id)
    if existing is not None and existing.status == GamePlayerStatus.JOINED.value:
        raise ConflictError("Player has already joined this game")

    try:
        if not await _claim_spot(session, game_id):
            raise await _classify_join_failure(session, game_id)
        membership = await membership_service.activate_membership(
            session, game_id, player_id, utcnow()
        )
        membership_data = _membership_to_dict(membership)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    game = await _load_game(session, game_id)
    logger.info(
        f"Player {player_id} joined game {game_id} "
        f"({game.available_spots}/{game.total_spots} spots left, status {game.status})"
    )

    if game.organizer_id != player_id:
        try:
            player_name = await user_service.get_display_name(session, player_id)
            notification_service.notify_game_join(game.organizer_id, player_name, _game_details(game))
        except Exception as e:
            logger.warning(f"Failed to dispatch join notification for game {game_id}: {e}")

    return {**membership_data, "game": _game_to_dict(game)}


async def leave_game(session: AsyncSession, game_id: int, player_id: str) -> Dict:
    """
    Leave a game, giving the spot back.

    Raises:
        NotFoundError: Game absent or player has no active membership
    """
    await _load_game(session, game_id)

    try:
        if not await membership_service.deactivate_membership(
            session, game_id, player_id, GamePlayerStatus.LEFT
        ):
            raise NotFoundError("Player is not in this game")
        await _release_spot(session, game_id)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    game = await _load_game(session, game_id)
    membership = await membership_service.get_membership(session, game_id, player_id)
    logger.info(f"Player {player_id} left game {game_id}")

    if game.organizer_id != player_id:
        try:
            player_name = await user_service.get_display_name(session, player_id)
            notification_service.notify_game_leave(game.organizer_id, player_name, _game_details(game))
        except Exception as e:
            logger.warning(f"Failed to dispatch leave notification for game {game_id}: {e}")

    return {**_membership_to_dict(membership), "game": _game_to_dict(game)}


async def kick_player(
    session: AsyncSession, game_id: int, player_id: str, requester_id: str
) -> Dict:
    """
    Remove a player from a game. Organizer only.

    Raises:
        NotFoundError: Game absent or player has no active membership
        ForbiddenError: Requester is not the organizer
    """
    game = await _load_game(session, game_id)
    if game.organizer_id != requester_id:
        raise ForbiddenError("Only the organizer can remove players")

    try:
        if not await membership_service.deactivate_membership(
            session, game_id, player_id, GamePlayerStatus.KICKED
        ):
            raise NotFoundError("Player is not in this game")
        await _release_spot(session, game_id)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    game = await _load_game(session, game_id)
    membership = await membership_service.get_membership(session, game_id, player_id)
    logger.info(f"Player {player_id} kicked from game {game_id} by {requester_id}")

    try:
        notification_service.notify_game_kick(player_id, _game_details(game))
    except Exception as e:
        logger.warning(f"Failed to dispatch kick notification for game {game_id}: {e}")

    return {**_membership_to_dict(membership), "game": _game_to_dict(game)}


async def get_game_players(session: AsyncSession, game_id: int) -> Dict:
    """Joined players, oldest join first, with the current spot snapshot."""
    game = await _load_game(session, game_id)
    rows = await membership_service.list_active_memberships(session, game_id)

    players = [
        {
            **_membership_to_dict(row["membership"]),
            "player": {
                "id": row["player"].id,
                "display_name": row["player"].display_name,
                "avatar_url": row["player"].avatar_url,
            },
        }
        for row in rows
    ]
    return {
        "players": players,
        "total_players": len(players),
        "total_spots": game.total_spots,
        "available_spots": game.available_spots,
    }


async def _require_organized_active_game(
    session: AsyncSession, game_id: int, requester_id: Optional[str]
) -> Game:
    game = await _load_game(session, game_id)
    if requester_id is not None and game.organizer_id != requester_id:
        raise ForbiddenError("Only the organizer can change this game")
    if game.status in TERMINAL_GAME_STATUSES:
        raise InvalidStateError(f"Game is {game.status}")
    return game


async def update_game(session: AsyncSession, game_id: int, requester_id: str, **changes) -> Dict:
    """
    Update game details. Organizer only, non-terminal games only.

    A total_spots change recomputes available_spots from the joined count in
    one conditional statement; if a join or leave lands in between, the
    update fails with ConflictError and can be retried.

    Raises:
        ValidationError: Unknown field, invalid value, or total below joined count
        ForbiddenError: Requester is not the organizer
        InvalidStateError: Game is cancelled or completed
        ConflictError: Membership changed during the update
    """
    unknown = set(changes) - UPDATABLE_GAME_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update: {', '.join(sorted(unknown))}")
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        raise ValidationError("No changes provided")

    game = await _require_organized_active_game(session, game_id, requester_id)

    new_total = changes.get("total_spots", game.total_spots)
    joined_count = await membership_service.count_active_memberships(session, game_id)
    if isinstance(new_total, int) and new_total < joined_count:
        raise ValidationError(f"total_spots cannot be lower than the {joined_count} joined players")

    new_available = new_total - joined_count if isinstance(new_total, int) else game.available_spots
    _validate_game_fields(
        None,
        changes.get("game_level", game.game_level),
        changes.get("start_time", game.start_time),
        changes.get("end_time", game.end_time),
        new_total,
        new_available,
        changes.get("price_per_player", game.price_per_player),
    )

    values = dict(changes)
    for key in ("start_time", "end_time"):
        if key in values:
            values[key] = ensure_utc(values[key])
    values["updated_at"] = utcnow()

    conditions = [Game.id == game_id, Game.status.in_(ACTIVE_GAME_STATUSES)]
    if "total_spots" in changes:
        values["available_spots"] = new_available
        values["status"] = GameStatus.FULL.value if new_available == 0 else GameStatus.OPEN.value
        # Guard: joined count unchanged since it was read
        conditions.append(Game.total_spots - Game.available_spots == joined_count)

    try:
        result = await session.execute(
            update(Game)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Game was modified concurrently, please retry")
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    game = await _load_game(session, game_id)
    logger.info(f"Game {game_id} updated by {requester_id}: {', '.join(sorted(changes))}")

    try:
        player_ids = [
            pid for pid in await membership_service.list_active_player_ids(session, game_id)
            if pid != game.organizer_id
        ]
        notification_service.notify_game_update(player_ids, _game_details(game), changes.keys())
    except Exception as e:
        logger.warning(f"Failed to dispatch update notifications for game {game_id}: {e}")

    return _game_to_dict(game)


async def _finish_game(session: AsyncSession, game_id: int, status: GameStatus) -> None:
    try:
        result = await session.execute(
            update(Game)
            .where(and_(Game.id == game_id, Game.status.in_(ACTIVE_GAME_STATUSES)))
            .values(status=status.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError("Game is already cancelled or completed")
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def cancel_game(session: AsyncSession, game_id: int, requester_id: str) -> Dict:
    """Cancel an open or full game and notify its joined players. Organizer only."""
    await _require_organized_active_game(session, game_id, requester_id)
    await _finish_game(session, game_id, GameStatus.CANCELLED)

    game = await _load_game(session, game_id)
    logger.info(f"Game {game_id} cancelled by {requester_id}")

    try:
        player_ids = [
            pid for pid in await membership_service.list_active_player_ids(session, game_id)
            if pid != game.organizer_id
        ]
        notification_service.notify_game_cancel(player_ids, _game_details(game))
    except Exception as e:
        logger.warning(f"Failed to dispatch cancel notifications for game {game_id}: {e}")

    return _game_to_dict(game)


async def complete_game(
    session: AsyncSession, game_id: int, requester_id: Optional[str] = None
) -> Dict:
    """Mark a game completed. Organizer only when requester_id is given."""
    await _require_organized_active_game(session, game_id, requester_id)
    await _finish_game(session, game_id, GameStatus.COMPLETED)

    game = await _load_game(session, game_id)
    logger.info(f"Game {game_id} completed")
    return _game_to_dict(game)


async def complete_finished_games(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Complete every open or full game whose end_time has passed.

    Returns:
        Number of games completed
    """
    now = ensure_utc(now) if now is not None else utcnow()
    try:
        result = await session.execute(
            update(Game)
            .where(and_(Game.status.in_(ACTIVE_GAME_STATUSES), Game.end_time <= now))
            .values(status=GameStatus.COMPLETED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return result.rowcount or 0
