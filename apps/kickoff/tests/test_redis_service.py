"""
Tests for the realtime relay's Redis connection handling.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from kickoff.services import redis_service


@pytest.fixture
def relay(monkeypatch):
    """Enabled relay with fresh module state and a controllable client factory."""
    monkeypatch.setattr(redis_service, "REDIS_ENABLED", True)
    monkeypatch.setattr(redis_service, "REDIS_RETRY_SECONDS", 30.0)
    monkeypatch.setattr(redis_service, "_client", None)
    monkeypatch.setattr(redis_service, "_last_failure", None)
    factory = MagicMock()
    monkeypatch.setattr(redis_service, "_build_client", factory)
    return factory


def _client(ping_error=None):
    client = AsyncMock()
    if ping_error is not None:
        client.ping.side_effect = ping_error
    return client


@pytest.mark.asyncio
async def test_disabled_relay_never_connects(relay, monkeypatch):
    monkeypatch.setattr(redis_service, "REDIS_ENABLED", False)

    assert await redis_service.get_redis_client() is None
    relay.assert_not_called()


@pytest.mark.asyncio
async def test_connected_client_is_reused(relay):
    client = _client()
    relay.return_value = client

    first = await redis_service.get_redis_client()
    second = await redis_service.get_redis_client()

    assert first is client
    assert second is client
    relay.assert_called_once()


@pytest.mark.asyncio
async def test_failed_connect_backs_off(relay):
    broken = _client(RedisConnectionError("refused"))
    relay.return_value = broken

    assert await redis_service.get_redis_client() is None
    assert await redis_service.get_redis_client() is None

    relay.assert_called_once()
    broken.aclose.assert_awaited_once()
    assert await redis_service.is_redis_available() is False


@pytest.mark.asyncio
async def test_retries_after_cooldown(relay, monkeypatch):
    relay.side_effect = [_client(RedisConnectionError("refused")), _client()]

    assert await redis_service.get_redis_client() is None
    monkeypatch.setattr(redis_service, "REDIS_RETRY_SECONDS", 0.0)

    assert await redis_service.get_redis_client() is not None
    assert redis_service._last_failure is None


@pytest.mark.asyncio
async def test_lost_connection_is_replaced(relay):
    stale = _client()
    fresh = _client()
    relay.side_effect = [stale, fresh]

    assert await redis_service.get_redis_client() is stale
    stale.ping.side_effect = RedisConnectionError("gone")

    assert await redis_service.get_redis_client() is fresh
    stale.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_resets_client(relay):
    client = _client()
    relay.return_value = client
    await redis_service.get_redis_client()

    await redis_service.close_redis_connection()

    client.aclose.assert_awaited_once()
    assert redis_service._client is None


@pytest.mark.asyncio
async def test_unverified_lookup_skips_ping(relay):
    client = _client()
    relay.return_value = client
    await redis_service.get_redis_client()
    client.ping.reset_mock()

    for _ in range(3):
        assert await redis_service.get_redis_client(verify=False) is client

    client.ping.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_command_forces_redial(relay):
    stale = _client()
    fresh = _client()
    relay.side_effect = [stale, fresh]
    await redis_service.get_redis_client()

    await redis_service.mark_connection_failed()

    stale.aclose.assert_awaited_once()
    assert await redis_service.get_redis_client(verify=False) is fresh
