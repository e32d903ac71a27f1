"""
Redis client for the hold accelerator.

Redis here is advisory only: it lets a completion attempt see a live hold
without a database round trip. Anything written here may vanish (eviction,
FLUSHALL, restart) and the booking core must stay correct when it does.
"""

from typing import Optional

import redis.asyncio as redis

from eventpass.core.config import get_settings
from eventpass.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled or unreachable."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.HOLD_STORE_TIMEOUT_SECONDS,
                socket_timeout=settings.HOLD_STORE_TIMEOUT_SECONDS,
            )
            await client.ping()
            _redis_client = client
            logger.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e))
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
