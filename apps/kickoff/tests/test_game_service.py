"""
Tests for the game state machine: capacity, status derivation and
membership transitions.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func

from conftest import create_user, make_game
from kickoff.database.models import Game, GamePlayer, Notification
from kickoff.services import game_service, notification_service
from kickoff.services.errors import (
    ValidationError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    CapacityExceededError,
    InvalidStateError,
)
from kickoff.utils.datetime_utils import utcnow


async def _assert_capacity_consistent(session, game_id):
    """available_spots == total_spots - joined members."""
    game = await session.get(Game, game_id, populate_existing=True)
    joined = await session.execute(
        select(func.count())
        .select_from(GamePlayer)
        .where(GamePlayer.game_id == game_id, GamePlayer.status == "joined")
    )
    assert game.available_spots == game.total_spots - joined.scalar_one()
    assert 0 <= game.available_spots <= game.total_spots
    if game.status in ("open", "full"):
        assert (game.status == "full") == (game.available_spots == 0)


# ──────────────────────────────────────────────────────────────
# Create / read
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_game_defaults_available_to_total(db_session, users, field):
    game = await make_game(db_session, users["organizer"], field["id"], total_spots=8)
    assert game["available_spots"] == 8
    assert game["status"] == "open"
    assert game["organizer_id"] == users["organizer"]


@pytest.mark.asyncio
async def test_create_game_with_no_spots_is_full(db_session, users, field):
    game = await make_game(
        db_session, users["organizer"], field["id"], total_spots=4, available_spots=0
    )
    assert game["status"] == "full"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"game_type": 6}, "game_type"),
        ({"game_level": 0}, "game_level"),
        ({"total_spots": 0}, "total_spots"),
        ({"available_spots": 11}, "available_spots"),
        ({"price_per_player": -1}, "price_per_player"),
        ({"duration_hours": -1}, "start_time must be before end_time"),
    ],
)
async def test_create_game_validation(db_session, users, field, overrides, message):
    with pytest.raises(ValidationError, match=message):
        await make_game(db_session, users["organizer"], field["id"], **{"total_spots": 10, **overrides})


@pytest.mark.asyncio
async def test_create_game_unknown_field(db_session, users):
    with pytest.raises(NotFoundError):
        await make_game(db_session, users["organizer"], 9999)


@pytest.mark.asyncio
async def test_get_game_includes_field_and_organizer(db_session, game):
    result = await game_service.get_game(db_session, game["id"])
    assert result["field_name"] == "Riverside Pitch"
    assert result["organizer_name"] == "Olivia Organizer"


@pytest.mark.asyncio
async def test_get_game_not_found(db_session):
    with pytest.raises(NotFoundError):
        await game_service.get_game(db_session, 12345)


@pytest.mark.asyncio
async def test_list_games_filters_and_pages(db_session, users, field):
    for hours in (10, 20, 30):
        await make_game(db_session, users["organizer"], field["id"], starts_in_hours=hours)
    cancelled = await make_game(db_session, users["organizer"], field["id"], starts_in_hours=40)
    await game_service.cancel_game(db_session, cancelled["id"], users["organizer"])

    result = await game_service.list_games(db_session, status="open", limit=2)
    assert result["total_count"] == 3
    assert result["has_more"] is True
    assert len(result["games"]) == 2
    assert result["games"][0]["start_time"] < result["games"][1]["start_time"]

    with pytest.raises(ValidationError):
        await game_service.list_games(db_session, status="postponed")


# ──────────────────────────────────────────────────────────────
# Join / leave / kick
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_join_takes_one_spot(db_session, users, game):
    result = await game_service.join_game(db_session, game["id"], users["a"])
    assert result["status"] == "joined"
    assert result["player_id"] == users["a"]
    assert result["game"]["available_spots"] == 2
    assert result["game"]["status"] == "open"
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_last_spot_flips_to_full_and_leave_reopens(db_session, users, game):
    for key in ("a", "b"):
        await game_service.join_game(db_session, game["id"], users[key])
    last = await game_service.join_game(db_session, game["id"], users["c"])
    assert last["game"]["available_spots"] == 0
    assert last["game"]["status"] == "full"

    left = await game_service.leave_game(db_session, game["id"], users["b"])
    assert left["status"] == "left"
    assert left["game"]["available_spots"] == 1
    assert left["game"]["status"] == "open"
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_join_full_game_raises_capacity_exceeded(db_session, users, field):
    game = await make_game(db_session, users["organizer"], field["id"], total_spots=1)
    await game_service.join_game(db_session, game["id"], users["a"])

    with pytest.raises(CapacityExceededError):
        await game_service.join_game(db_session, game["id"], users["b"])
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_join_twice_conflicts_and_spots_unchanged(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])

    with pytest.raises(ConflictError) as exc_info:
        await game_service.join_game(db_session, game["id"], users["a"])
    assert not isinstance(exc_info.value, CapacityExceededError)

    snapshot = await game_service.get_game(db_session, game["id"])
    assert snapshot["available_spots"] == 2


@pytest.mark.asyncio
async def test_rejoin_reuses_membership_row(db_session, users, game):
    first = await game_service.join_game(db_session, game["id"], users["a"])
    await game_service.leave_game(db_session, game["id"], users["a"])
    again = await game_service.join_game(db_session, game["id"], users["a"])

    assert again["id"] == first["id"]
    assert again["status"] == "joined"
    rows = await db_session.execute(
        select(func.count()).select_from(GamePlayer).where(GamePlayer.game_id == game["id"])
    )
    assert rows.scalar_one() == 1
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_join_unknown_game(db_session, users):
    with pytest.raises(NotFoundError):
        await game_service.join_game(db_session, 424242, users["a"])


@pytest.mark.asyncio
@pytest.mark.parametrize("finish", ["cancel", "complete"])
async def test_join_terminal_game_raises_invalid_state(db_session, users, game, finish):
    if finish == "cancel":
        await game_service.cancel_game(db_session, game["id"], users["organizer"])
    else:
        await game_service.complete_game(db_session, game["id"], users["organizer"])

    with pytest.raises(InvalidStateError):
        await game_service.join_game(db_session, game["id"], users["a"])


@pytest.mark.asyncio
async def test_leave_without_membership(db_session, users, game):
    with pytest.raises(NotFoundError, match="not in this game"):
        await game_service.leave_game(db_session, game["id"], users["a"])
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_leave_twice(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])
    await game_service.leave_game(db_session, game["id"], users["a"])
    with pytest.raises(NotFoundError):
        await game_service.leave_game(db_session, game["id"], users["a"])
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_leave_cancelled_game_keeps_status(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])
    await game_service.cancel_game(db_session, game["id"], users["organizer"])

    result = await game_service.leave_game(db_session, game["id"], users["a"])
    assert result["game"]["status"] == "cancelled"
    assert result["game"]["available_spots"] == 3


@pytest.mark.asyncio
async def test_kick_by_organizer(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])

    result = await game_service.kick_player(
        db_session, game["id"], users["a"], users["organizer"]
    )
    assert result["status"] == "kicked"
    assert result["game"]["available_spots"] == 3

    # A kicked player may join again
    again = await game_service.join_game(db_session, game["id"], users["a"])
    assert again["status"] == "joined"


@pytest.mark.asyncio
async def test_kick_by_non_organizer_is_forbidden_and_changes_nothing(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])

    with pytest.raises(ForbiddenError):
        await game_service.kick_player(db_session, game["id"], users["a"], users["b"])

    players = await game_service.get_game_players(db_session, game["id"])
    assert [p["player_id"] for p in players["players"]] == [users["a"]]
    assert players["available_spots"] == 2


@pytest.mark.asyncio
async def test_kick_forbidden_checked_before_membership(db_session, users, game):
    with pytest.raises(ForbiddenError):
        await game_service.kick_player(db_session, game["id"], users["c"], users["b"])


@pytest.mark.asyncio
async def test_kick_player_not_in_game(db_session, users, game):
    with pytest.raises(NotFoundError):
        await game_service.kick_player(db_session, game["id"], users["c"], users["organizer"])


@pytest.mark.asyncio
async def test_get_game_players_in_join_order(db_session, users, game):
    for key in ("b", "a"):
        await game_service.join_game(db_session, game["id"], users[key])

    result = await game_service.get_game_players(db_session, game["id"])
    assert [p["player_id"] for p in result["players"]] == [users["b"], users["a"]]
    assert result["players"][0]["player"]["display_name"] == "Blake"
    assert result["total_players"] == 2
    assert result["total_spots"] == 3


# ──────────────────────────────────────────────────────────────
# Concurrency
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_concurrent_joins_for_last_spot(session_maker, db_session, users, field):
    game = await make_game(db_session, users["organizer"], field["id"], total_spots=1)

    async def attempt(player_id):
        async with session_maker() as session:
            try:
                return await game_service.join_game(session, game["id"], player_id)
            except CapacityExceededError as e:
                return e

    results = await asyncio.gather(attempt(users["a"]), attempt(users["b"]))

    successes = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, CapacityExceededError)]
    assert len(successes) == 1
    assert len(failures) == 1

    snapshot = await game_service.get_game(db_session, game["id"])
    assert snapshot["available_spots"] == 0
    assert snapshot["status"] == "full"
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_concurrent_joins_never_overbook(session_maker, db_session, users, field):
    game = await make_game(db_session, users["organizer"], field["id"], total_spots=3)
    player_ids = [f"rush-{i}" for i in range(6)]
    for pid in player_ids:
        await create_user(db_session, pid)

    async def attempt(player_id):
        async with session_maker() as session:
            try:
                return await game_service.join_game(session, game["id"], player_id)
            except CapacityExceededError:
                return None

    results = await asyncio.gather(*(attempt(pid) for pid in player_ids))

    assert len([r for r in results if r is not None]) == 3
    await _assert_capacity_consistent(db_session, game["id"])


# ──────────────────────────────────────────────────────────────
# Update / cancel / complete
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_update_total_spots_recomputes_available(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])
    await game_service.join_game(db_session, game["id"], users["b"])

    updated = await game_service.update_game(
        db_session, game["id"], users["organizer"], total_spots=2
    )
    assert updated["available_spots"] == 0
    assert updated["status"] == "full"

    reopened = await game_service.update_game(
        db_session, game["id"], users["organizer"], total_spots=5
    )
    assert reopened["available_spots"] == 3
    assert reopened["status"] == "open"
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_update_total_below_joined_count(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])
    await game_service.join_game(db_session, game["id"], users["b"])

    with pytest.raises(ValidationError, match="cannot be lower"):
        await game_service.update_game(db_session, game["id"], users["organizer"], total_spots=1)


@pytest.mark.asyncio
async def test_update_rules(db_session, users, game):
    with pytest.raises(ForbiddenError):
        await game_service.update_game(db_session, game["id"], users["a"], game_level=4)
    with pytest.raises(ValidationError, match="Cannot update"):
        await game_service.update_game(db_session, game["id"], users["organizer"], status="full")
    with pytest.raises(ValidationError):
        await game_service.update_game(
            db_session,
            game["id"],
            users["organizer"],
            end_time=utcnow() - timedelta(days=3),
        )

    updated = await game_service.update_game(
        db_session, game["id"], users["organizer"], game_level=4, price_per_player=7.5
    )
    assert updated["game_level"] == 4
    assert updated["price_per_player"] == 7.5


@pytest.mark.asyncio
async def test_cancel_game(db_session, users, game):
    with pytest.raises(ForbiddenError):
        await game_service.cancel_game(db_session, game["id"], users["a"])

    cancelled = await game_service.cancel_game(db_session, game["id"], users["organizer"])
    assert cancelled["status"] == "cancelled"

    with pytest.raises(InvalidStateError):
        await game_service.cancel_game(db_session, game["id"], users["organizer"])
    with pytest.raises(InvalidStateError):
        await game_service.update_game(db_session, game["id"], users["organizer"], game_level=2)


@pytest.mark.asyncio
async def test_cancel_notifies_joined_players(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["a"])
    await game_service.join_game(db_session, game["id"], users["b"])

    await game_service.cancel_game(db_session, game["id"], users["organizer"])
    await notification_service.drain_background_tasks()

    result = await db_session.execute(
        select(Notification.user_id).where(Notification.type == "game_cancel")
    )
    assert sorted(result.scalars().all()) == sorted([users["a"], users["b"]])


@pytest.mark.asyncio
async def test_complete_finished_games(db_session, users, field):
    past = await make_game(db_session, users["organizer"], field["id"], starts_in_hours=-3)
    future = await make_game(db_session, users["organizer"], field["id"], starts_in_hours=5)
    cancelled = await make_game(db_session, users["organizer"], field["id"], starts_in_hours=-5)
    await game_service.cancel_game(db_session, cancelled["id"], users["organizer"])

    completed = await game_service.complete_finished_games(db_session)
    assert completed == 1

    assert (await game_service.get_game(db_session, past["id"]))["status"] == "completed"
    assert (await game_service.get_game(db_session, future["id"]))["status"] == "open"
    assert (await game_service.get_game(db_session, cancelled["id"]))["status"] == "cancelled"


# ──────────────────────────────────────────────────────────────
# End to end
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_game_lifecycle_with_notifications(db_session, users, field):
    """Organizer creates a 2-spot game, two players fill it, one leaves."""
    game = await make_game(db_session, users["organizer"], field["id"], total_spots=2)

    await game_service.join_game(db_session, game["id"], users["a"])
    full = await game_service.join_game(db_session, game["id"], users["b"])
    assert full["game"]["status"] == "full"

    with pytest.raises(CapacityExceededError):
        await game_service.join_game(db_session, game["id"], users["c"])

    after_leave = await game_service.leave_game(db_session, game["id"], users["a"])
    assert after_leave["game"]["status"] == "open"

    joined = await game_service.join_game(db_session, game["id"], users["c"])
    assert joined["game"]["status"] == "full"

    await notification_service.drain_background_tasks()
    history = await notification_service.get_user_notifications(db_session, users["organizer"])
    types = sorted(n["type"] for n in history["notifications"])
    assert types == ["game_join", "game_join", "game_join", "game_leave"]
    assert history["unread_count"] == 4
    await _assert_capacity_consistent(db_session, game["id"])


@pytest.mark.asyncio
async def test_organizer_joining_own_game_is_not_notified(db_session, users, game):
    await game_service.join_game(db_session, game["id"], users["organizer"])
    await notification_service.drain_background_tasks()
    assert await notification_service.get_unread_count(db_session, users["organizer"]) == 0
