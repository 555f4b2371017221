"""
Game completion service: marks games completed once their end_time passes.

Background worker that polls every GAME_COMPLETION_POLL_SECONDS. Open and
full games whose end_time is in the past move to 'completed'.
"""

import asyncio
import logging
import os
from typing import Optional

from kickoff.database import db
from kickoff.services import game_service

logger = logging.getLogger(__name__)

# How often the worker checks for finished games (seconds)
POLL_INTERVAL_SECONDS = int(os.getenv("GAME_COMPLETION_POLL_SECONDS", "60"))


class GameCompletionService:
    """Background service that completes finished games."""

    def __init__(self):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background completion worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Game completion worker started")

    def stop(self) -> None:
        """Stop the background completion worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Game completion worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: complete finished games, then sleep. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.complete_finished_games()
            except Exception as e:
                logger.error(f"Error in game completion worker: {e}", exc_info=True)

            # Wait for poll interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=POLL_INTERVAL_SECONDS)
                break
            except asyncio.TimeoutError:
                pass

    async def complete_finished_games(self) -> int:
        """Run one completion pass on a dedicated session."""
        async with db.AsyncSessionLocal() as session:
            completed = await game_service.complete_finished_games(session)
        if completed:
            logger.info(f"Auto-completed {completed} finished game(s)")
        return completed


# Global singleton
_completion_service = GameCompletionService()


def get_game_completion_service() -> GameCompletionService:
    """Get the global game completion service instance."""
    return _completion_service
