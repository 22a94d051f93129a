"""
Redis Connection Management

Redis connection with graceful degradation, plus the shared counter store
used for failed-login tracking across application instances.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from ehr_audit.config import settings

# Logger
logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "ehr_audit:v1:"


class RedisClient:
    """
    Process-wide Redis connection for the attempt counters.

    A failed connect is not fatal: get_client() returns None and callers
    fall back to in-process counting. The next call tries again.
    """

    _client: Optional[Redis] = None

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """Get the connected client, or None if Redis cannot be reached."""
        if cls._client is not None:
            return cls._client

        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5.0,
            socket_timeout=5.0,
            retry_on_timeout=True,
            retry=Retry(ExponentialBackoff(), retries=3),
        )
        try:
            await client.ping()
        except (ConnectionError, TimeoutError, RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            await client.aclose()
            return None

        logger.info("Redis connection established")
        cls._client = client
        return client

    @classmethod
    async def close(cls) -> None:
        """Close the shared connection, if any."""
        client, cls._client = cls._client, None
        if client is None:
            return
        try:
            await client.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")


async def get_redis() -> Optional[Redis]:
    """
    Get the shared Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


class AttemptCounterStore:
    """
    Fixed-window attempt counters.

    Key: ehr_audit:v1:attempts:{identifier}

    Counters live in Redis so every application instance sees the same
    count. If Redis is unavailable the store degrades to a per-process
    counter and logs a warning: detection keeps working, but only for
    attempts that hit this instance.
    """

    ATTEMPTS_PREFIX = f"{APP_PREFIX}attempts:"

    def __init__(self, redis_client: Optional[Redis], window_seconds: Optional[int] = None):
        self.redis = redis_client
        self.window_seconds = window_seconds or settings.brute_force_window_seconds
        # identifier -> (count, window start on the monotonic clock)
        self._local: dict[str, tuple[int, float]] = {}

    def _key(self, identifier: str) -> str:
        """Generate counter key with namespace."""
        return f"{self.ATTEMPTS_PREFIX}{identifier}"

    async def increment(self, identifier: str) -> int:
        """
        Count one attempt.

        Args:
            identifier: Opaque counter id (already hashed by the caller)

        Returns:
            Attempts in the current window, this one included
        """
        if self.redis is None:
            logger.warning("Redis unavailable - counting attempts in process memory")
            return self._increment_local(identifier)

        try:
            key = self._key(identifier)

            current = await self.redis.incr(key)

            # Set expiry on first attempt in window
            if current == 1:
                await self.redis.expire(key, self.window_seconds)

            return int(current)

        except RedisError as e:
            logger.warning(f"Attempt counter unavailable ({e}) - counting in process memory")
            return self._increment_local(identifier)

    async def get_count(self, identifier: str) -> int:
        """Attempts in the current window (0 if none)."""
        if self.redis is not None:
            try:
                count = await self.redis.get(self._key(identifier))
                return int(count) if count else 0
            except RedisError as e:
                logger.warning(f"Attempt counter read failed: {e}")
        return self._local_count(identifier)

    async def reset(self, identifier: str) -> bool:
        """
        Clear the counter for an identifier.

        Returns:
            True if the shared counter was cleared
        """
        self._local.pop(identifier, None)

        if self.redis is None:
            return False

        try:
            await self.redis.delete(self._key(identifier))
            logger.debug(f"Attempt counter reset for {identifier[:12]}")
            return True
        except RedisError as e:
            logger.error(f"Failed to reset attempt counter: {e}")
            return False

    def _increment_local(self, identifier: str) -> int:
        now = time.monotonic()
        count, started = self._local.get(identifier, (0, now))
        if now - started >= self.window_seconds:
            count, started = 0, now
        count += 1
        self._local[identifier] = (count, started)
        return count

    def _local_count(self, identifier: str) -> int:
        entry = self._local.get(identifier)
        if entry is None:
            return 0
        count, started = entry
        if time.monotonic() - started >= self.window_seconds:
            return 0
        return count


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False
