"""
Tests for the background game completion worker.
"""

import asyncio

import pytest

from conftest import make_game
from kickoff.services import game_service
from kickoff.services.game_completion_service import GameCompletionService


@pytest.mark.asyncio
async def test_completion_pass_uses_its_own_session(db_session, users, field):
    finished = await make_game(db_session, users["organizer"], field["id"], starts_in_hours=-2)

    completed = await GameCompletionService().complete_finished_games()

    assert completed == 1
    assert (await game_service.get_game(db_session, finished["id"]))["status"] == "completed"


@pytest.mark.asyncio
async def test_worker_start_and_stop(db_session, users, field):
    finished = await make_game(db_session, users["organizer"], field["id"], starts_in_hours=-2)
    service = GameCompletionService()

    service.start()
    for _ in range(50):
        if (await game_service.get_game(db_session, finished["id"]))["status"] == "completed":
            break
        await asyncio.sleep(0.05)
    service.stop()

    assert (await game_service.get_game(db_session, finished["id"]))["status"] == "completed"
    await asyncio.gather(service._worker_task, return_exceptions=True)
    assert service._worker_task.done()
