"""
Unit tests for WebSocket manager.
Tests connection management, message sending, relay and timeout handling.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from kickoff.services import redis_service
from kickoff.services.websocket_manager import (
    WebSocketManager,
    get_websocket_manager,
    user_channel,
    WEBSOCKET_TIMEOUT_SECONDS,
)
from kickoff.utils.datetime_utils import utcnow


@pytest_asyncio.fixture
async def ws_manager():
    """Create a fresh WebSocket manager for each test."""
    return WebSocketManager()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


@pytest.mark.asyncio
async def test_connect_and_disconnect(ws_manager, mock_websocket):
    await ws_manager.connect("user-1", mock_websocket)
    assert await ws_manager.get_connection_count("user-1") == 1
    assert mock_websocket in ws_manager.last_seen

    await ws_manager.disconnect("user-1", mock_websocket)
    assert await ws_manager.get_connection_count("user-1") == 0
    assert mock_websocket not in ws_manager.last_seen


@pytest.mark.asyncio
async def test_send_to_user_reaches_every_connection(ws_manager):
    ws1, ws2 = AsyncMock(), AsyncMock()
    await ws_manager.connect("user-1", ws1)
    await ws_manager.connect("user-1", ws2)

    message = {"type": "notification", "notification": {"id": 1}}
    assert await ws_manager.send_to_user("user-1", message) is True

    ws1.send_text.assert_awaited_once_with(json.dumps(message))
    ws2.send_text.assert_awaited_once_with(json.dumps(message))


@pytest.mark.asyncio
async def test_send_to_user_without_connections(ws_manager):
    assert await ws_manager.send_to_user("nobody", {"type": "ping"}) is False


@pytest.mark.asyncio
async def test_failed_connection_is_dropped(ws_manager):
    healthy, broken = AsyncMock(), AsyncMock()
    broken.send_text.side_effect = RuntimeError("socket closed")
    await ws_manager.connect("user-1", healthy)
    await ws_manager.connect("user-1", broken)

    assert await ws_manager.send_to_user("user-1", {"type": "x"}) is True
    assert await ws_manager.get_connection_count("user-1") == 1


@pytest.mark.asyncio
async def test_cleanup_stale_connections(ws_manager, mock_websocket):
    await ws_manager.connect("user-1", mock_websocket)
    ws_manager.last_seen[mock_websocket] = utcnow() - timedelta(
        seconds=WEBSOCKET_TIMEOUT_SECONDS + 5
    )

    await ws_manager.cleanup_stale_connections()

    assert await ws_manager.get_connection_count("user-1") == 0


@pytest.mark.asyncio
async def test_publish_without_redis_delivers_locally(ws_manager, mock_websocket, monkeypatch):
    monkeypatch.setattr(redis_service, "get_redis_client", AsyncMock(return_value=None))
    await ws_manager.connect("user-1", mock_websocket)

    assert await ws_manager.publish("user-1", {"type": "unread_count_changed"}) is True
    mock_websocket.send_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_with_redis_uses_user_channel(ws_manager, mock_websocket, monkeypatch):
    redis = AsyncMock()
    get_client = AsyncMock(return_value=redis)
    monkeypatch.setattr(redis_service, "get_redis_client", get_client)
    await ws_manager.connect("user-1", mock_websocket)

    await ws_manager.publish("user-1", {"type": "notification"})

    redis.publish.assert_awaited_once_with(user_channel("user-1"), json.dumps({"type": "notification"}))
    get_client.assert_awaited_once_with(verify=False)
    # Local sockets receive the message through the relay, not directly
    mock_websocket.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_falls_back_when_redis_publish_fails(ws_manager, mock_websocket, monkeypatch):
    redis = AsyncMock()
    redis.publish.side_effect = ConnectionError("redis gone")
    monkeypatch.setattr(redis_service, "get_redis_client", AsyncMock(return_value=redis))
    mark_failed = AsyncMock()
    monkeypatch.setattr(redis_service, "mark_connection_failed", mark_failed)
    await ws_manager.connect("user-1", mock_websocket)

    assert await ws_manager.publish("user-1", {"type": "notification"}) is True
    mock_websocket.send_text.assert_awaited_once()
    mark_failed.assert_awaited_once()


@pytest.mark.asyncio
async def test_relay_forwards_to_local_user(ws_manager, mock_websocket):
    await ws_manager.connect("user-7", mock_websocket)

    await ws_manager._relay(
        {"type": "pmessage", "channel": user_channel("user-7"), "data": json.dumps({"type": "x"})}
    )
    await ws_manager._relay({"type": "pmessage", "channel": user_channel("user-7"), "data": "{oops"})

    mock_websocket.send_text.assert_awaited_once_with(json.dumps({"type": "x"}))


def test_get_websocket_manager_is_singleton():
    assert get_websocket_manager() is get_websocket_manager()
