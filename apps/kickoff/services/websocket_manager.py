"""
WebSocket connection manager for real-time notification delivery.

Each instance only knows its own sockets. Messages are published to a
per-user Redis channel and every instance relays what it receives to its
local connections, so delivery works across horizontally scaled instances.
Without Redis, publishing falls back to local delivery.
"""

import asyncio
import json
import logging
from typing import Dict, List, Set, Optional
from datetime import datetime, timedelta
from fastapi import WebSocket

from kickoff.services import redis_service
from kickoff.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Sockets silent for longer than this are dropped by cleanup_stale_connections
WEBSOCKET_TIMEOUT_SECONDS = 30

CHANNEL_PREFIX = "kickoff:notifications:"
LISTENER_RETRY_SECONDS = 5


def user_channel(user_id: str) -> str:
    return f"{CHANNEL_PREFIX}{user_id}"


class WebSocketManager:
    """
    Registry of this instance's notification sockets.

    A user may hold several sockets (tabs, devices). Every socket has exactly
    one owner in `_owners`; `connections_by_user` is the inverse index and
    `last_seen` records the latest traffic in either direction.
    """

    def __init__(self):
        self.connections_by_user: Dict[str, Set[WebSocket]] = {}
        self.last_seen: Dict[WebSocket, datetime] = {}
        self._owners: Dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()
        self._listener_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def connect(self, user_id: str, websocket: WebSocket):
        async with self._lock:
            self._owners[websocket] = user_id
            self.connections_by_user.setdefault(user_id, set()).add(websocket)
            self.last_seen[websocket] = utcnow()
            count = len(self.connections_by_user[user_id])
        logger.info(f"WebSocket connected for user {user_id} ({count} open)")

    async def disconnect(self, user_id: str, websocket: WebSocket):
        async with self._lock:
            self._drop(websocket)
        logger.info(f"WebSocket disconnected for user {user_id}")

    def _drop(self, websocket: WebSocket) -> None:
        """Forget a socket. Caller holds the lock."""
        owner = self._owners.pop(websocket, None)
        self.last_seen.pop(websocket, None)
        sockets = self.connections_by_user.get(owner)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.connections_by_user[owner]

    async def send_to_user(self, user_id: str, message: dict) -> bool:
        """
        Deliver a message to this instance's sockets for a user.

        Sockets that fail to receive are dropped. Returns True if at least
        one socket accepted the message.
        """
        async with self._lock:
            targets = list(self.connections_by_user.get(user_id, ()))
        if not targets:
            return False

        payload = json.dumps(message)
        delivered: List[WebSocket] = []
        failed: List[WebSocket] = []
        # Sends happen outside the lock so a slow socket cannot stall connect/disconnect
        for websocket in targets:
            try:
                await websocket.send_text(payload)
                delivered.append(websocket)
            except Exception as e:
                logger.warning(f"Error sending WebSocket message to user {user_id}: {e}")
                failed.append(websocket)

        async with self._lock:
            now = utcnow()
            for websocket in delivered:
                if websocket in self._owners:
                    self.last_seen[websocket] = now
            for websocket in failed:
                self._drop(websocket)

        return bool(delivered)

    async def publish(self, user_id: str, message: dict) -> bool:
        """
        Publish a message for a user to every instance.

        Returns:
            True if the message was handed to Redis or sent to a local connection
        """
        redis = await redis_service.get_redis_client(verify=False)
        if redis is not None:
            try:
                await redis.publish(user_channel(user_id), json.dumps(message))
                return True
            except Exception as e:
                logger.warning(f"Redis publish failed for user {user_id}, delivering locally: {e}")
                await redis_service.mark_connection_failed()
        return await self.send_to_user(user_id, message)

    async def get_connection_count(self, user_id: str) -> int:
        async with self._lock:
            return len(self.connections_by_user.get(user_id, ()))

    async def update_activity(self, websocket: WebSocket):
        """Record client traffic (pings) on a socket."""
        async with self._lock:
            if websocket in self._owners:
                self.last_seen[websocket] = utcnow()

    async def cleanup_stale_connections(self) -> int:
        """Drop sockets idle past WEBSOCKET_TIMEOUT_SECONDS; returns how many."""
        cutoff = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)
        async with self._lock:
            stale = [ws for ws, seen in self.last_seen.items() if seen < cutoff]
            owners = [self._owners.get(ws) for ws in stale]
            for websocket in stale:
                self._drop(websocket)

        for user_id in owners:
            logger.info(f"Cleaned up stale WebSocket connection for user {user_id}")
        return len(stale)

    def start_listener(self) -> None:
        """Start relaying Redis messages to local connections."""
        if self._listener_task is None or self._listener_task.done():
            self._stop_event.clear()
            self._listener_task = asyncio.create_task(self._listen_loop())
            logger.info("Notification relay listener started")

    def stop_listener(self) -> None:
        """Stop the relay listener."""
        self._stop_event.set()
        if self._listener_task and not self._listener_task.done():
            self._listener_task.cancel()
            logger.info("Notification relay listener stopped")

    async def _listen_loop(self) -> None:
        """Subscribe to all user channels; reconnect after errors until stopped."""
        while not self._stop_event.is_set():
            redis = await redis_service.get_redis_client()
            if redis is None:
                # Local-only mode; check again later in case Redis comes up
                if await self._wait_or_stop(LISTENER_RETRY_SECONDS):
                    break
                continue

            pubsub = redis.pubsub()
            try:
                await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
                while not self._stop_event.is_set():
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message is None or message.get("type") != "pmessage":
                        continue
                    await self._relay(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Notification relay listener error, reconnecting: {e}")
                if await self._wait_or_stop(LISTENER_RETRY_SECONDS):
                    break
            finally:
                try:
                    await pubsub.aclose()
                except Exception as e:
                    logger.debug(f"Error closing pubsub: {e}")

    async def _relay(self, message: dict) -> None:
        channel = message.get("channel", "")
        user_id = channel[len(CHANNEL_PREFIX):]
        try:
            payload = json.loads(message.get("data") or "{}")
        except ValueError:
            logger.warning(f"Dropping malformed relay message on {channel}")
            return
        await self.send_to_user(user_id, payload)

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager
