"""
Membership ledger: per-(game, player) join/leave/kick records.

Storage-level primitives only. Business rules live in game_service, which
is the sole caller. One row per (game_id, player_id) pair; re-joining
reactivates the existing row instead of inserting a duplicate, and rows are
never deleted so they double as audit history.
"""

from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.models import GamePlayer, GamePlayerStatus, User
from kickoff.services.errors import ConflictError

logger = logging.getLogger(__name__)


async def get_membership(
    session: AsyncSession, game_id: int, player_id: str
) -> Optional[GamePlayer]:
    """Return the membership row for the pair, whatever its status."""
    result = await session.execute(
        select(GamePlayer).where(
            and_(GamePlayer.game_id == game_id, GamePlayer.player_id == player_id)
        )
    )
    return result.scalar_one_or_none()


async def activate_membership(
    session: AsyncSession, game_id: int, player_id: str, now: datetime
) -> GamePlayer:
    """
    Create or reactivate the membership for (game_id, player_id) as 'joined'.

    Must run inside the caller's transaction so it commits or rolls back
    together with the spot decrement.

    Args:
        session: Database session
        game_id: ID of the game
        player_id: ID of the joining user
        now: Timestamp recorded as joined_at

    Returns:
        The joined GamePlayer row

    Raises:
        ConflictError: If the player already has an active membership
            (including one created concurrently by another request)
    """
    existing = await get_membership(session, game_id, player_id)

    if existing is None:
        membership = GamePlayer(
            game_id=game_id,
            player_id=player_id,
            joined_at=now,
            status=GamePlayerStatus.JOINED.value,
        )
        session.add(membership)
        try:
            await session.flush()
        except IntegrityError:
            # Caller rolls back the whole unit, including the spot decrement
            logger.info(f"Concurrent join detected for game {game_id}, player {player_id}")
            raise ConflictError("Player has already joined this game")
        return membership

    # Conditional re-activation: only a non-active row may flip back to joined
    result = await session.execute(
        update(GamePlayer)
        .where(
            and_(
                GamePlayer.id == existing.id,
                GamePlayer.status != GamePlayerStatus.JOINED.value,
            )
        )
        .values(status=GamePlayerStatus.JOINED.value, joined_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Player has already joined this game")

    await session.refresh(existing)
    return existing


async def deactivate_membership(
    session: AsyncSession, game_id: int, player_id: str, status: GamePlayerStatus
) -> bool:
    """
    Move an active membership to 'left' or 'kicked'.

    Returns:
        True if an active row was changed, False if none was active
    """
    if status == GamePlayerStatus.JOINED:
        raise ValueError("deactivate_membership requires 'left' or 'kicked'")

    result = await session.execute(
        update(GamePlayer)
        .where(
            and_(
                GamePlayer.game_id == game_id,
                GamePlayer.player_id == player_id,
                GamePlayer.status == GamePlayerStatus.JOINED.value,
            )
        )
        .values(status=status.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_active_memberships(session: AsyncSession, game_id: int) -> List[dict]:
    """Active memberships for a game with player info, oldest join first."""
    result = await session.execute(
        select(GamePlayer, User)
        .join(User, GamePlayer.player_id == User.id)
        .where(
            and_(
                GamePlayer.game_id == game_id,
                GamePlayer.status == GamePlayerStatus.JOINED.value,
            )
        )
        .order_by(GamePlayer.joined_at.asc(), GamePlayer.id.asc())
    )
    return [
        {"membership": membership, "player": player}
        for membership, player in result.all()
    ]


async def count_active_memberships(session: AsyncSession, game_id: int) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(GamePlayer)
        .where(
            and_(
                GamePlayer.game_id == game_id,
                GamePlayer.status == GamePlayerStatus.JOINED.value,
            )
        )
    )
    return result.scalar_one() or 0


async def list_active_player_ids(session: AsyncSession, game_id: int) -> List[str]:
    result = await session.execute(
        select(GamePlayer.player_id).where(
            and_(
                GamePlayer.game_id == game_id,
                GamePlayer.status == GamePlayerStatus.JOINED.value,
            )
        )
    )
    return list(result.scalars().all())
