"""
Shared Redis connection for the realtime notification relay.

Every API instance publishes live notifications to a per-user channel and
subscribes to the pattern covering all of them, so a client connected to
any instance receives events produced by any other. Without Redis the
relay degrades to in-process delivery only.

Settings:
    REDIS_ENABLED   - "false" disables the relay entirely
    REDIS_URL       - full connection URL, wins over the discrete settings
    REDIS_HOST / REDIS_PORT / REDIS_DB / REDIS_PASSWORD
    REDIS_RETRY_SECONDS - how long to wait before re-dialling after a failure
"""

import logging
import os
import time
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_ENABLED = os.getenv("REDIS_ENABLED", "true").lower() == "true"
REDIS_URL = os.getenv("REDIS_URL")
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_RETRY_SECONDS = float(os.getenv("REDIS_RETRY_SECONDS", "30"))

_CLIENT_OPTIONS = {
    "decode_responses": True,
    "socket_connect_timeout": 2,
    "socket_timeout": 5,
    "retry_on_timeout": True,
}

_client: Optional[Redis] = None
_last_failure: Optional[float] = None


def _describe_target() -> str:
    if REDIS_URL:
        return REDIS_URL.rsplit("@", 1)[-1]
    return f"{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"


def _build_client() -> Redis:
    if REDIS_URL:
        return Redis.from_url(REDIS_URL, **_CLIENT_OPTIONS)
    return Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB,
        password=REDIS_PASSWORD or None,
        **_CLIENT_OPTIONS,
    )


def _in_cooldown() -> bool:
    return _last_failure is not None and time.monotonic() - _last_failure < REDIS_RETRY_SECONDS


async def get_redis_client(verify: bool = True) -> Optional[Redis]:
    """
    Return a live client for the relay, or None when it should be bypassed.

    None means: disabled by configuration, or the last connection attempt
    failed less than REDIS_RETRY_SECONDS ago. Callers fall back to local
    delivery in that case.

    With verify=False an already connected client is returned without a
    PING; the caller reports a failed command through mark_connection_failed.
    """
    global _client, _last_failure

    if not REDIS_ENABLED or _in_cooldown():
        return None

    if _client is not None and not verify:
        return _client

    if _client is not None:
        try:
            await _client.ping()
            return _client
        except (RedisError, OSError) as e:
            logger.warning(f"Redis relay connection lost, reconnecting: {e}")
            await close_redis_connection()

    client = _build_client()
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        _last_failure = time.monotonic()
        logger.warning(
            f"Redis relay unavailable at {_describe_target()}, "
            f"retrying in {REDIS_RETRY_SECONDS:.0f}s: {e}"
        )
        await client.aclose()
        return None

    _client = client
    _last_failure = None
    logger.info(f"Redis relay connected to {_describe_target()}")
    return _client


async def close_redis_connection() -> None:
    """Close the shared client (application shutdown or reconnect)."""
    global _client

    client, _client = _client, None
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Closed Redis relay connection")
    except (RedisError, OSError) as e:
        logger.warning(f"Error closing Redis relay connection: {e}")


async def mark_connection_failed() -> None:
    """Drop the shared client after a failed command; the next call re-dials."""
    await close_redis_connection()


async def is_redis_available() -> bool:
    """True when live notifications are relayed across instances."""
    return await get_redis_client() is not None
