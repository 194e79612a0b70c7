from __future__ import annotations

import hashlib
import math
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from pixora_auth.logging import get_logger
from pixora_auth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

BLACKLIST_PREFIX = "auth:blacklist:"


def remaining_ttl_seconds(expires_at: datetime, now: float) -> int:
    """Whole seconds until ``expires_at``; 0 once it has passed.

    Rounds up so an entry never expires before the token it revokes.
    """
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = expires_at.timestamp() - now
    if remaining <= 0:
        return 0
    return max(1, math.ceil(remaining))


def rate_limit_key(key: str) -> str:
    """Hash rate-limit subjects so emails and IPs never appear as raw keys."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


class RedisCache:
    """Thin Redis wrapper for the token blacklist and rate limits."""

    # Fixed window in one round trip. The TTL check also repairs a key left
    # without an expiry, so a counter can never outlive its window forever.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_token(self, jti: str, expires_at: datetime) -> bool:
        """Revoke ``jti`` until ``expires_at``.

        Returns False without writing when the token has already expired.
        Writing the same jti twice is harmless.
        """
        ttl = remaining_ttl_seconds(expires_at, time.time())
        if ttl <= 0:
            return False
        try:
            await self.client.set(f"{BLACKLIST_PREFIX}{jti}", "1", ex=ttl)
        except RedisError as exc:
            logger.error("redis_blacklist_write_failed", error=str(exc))
            raise StorageUnavailable(backend="redis") from exc
        return True

    async def is_token_blacklisted(self, jti: str) -> bool:
        try:
            return bool(await self.client.exists(f"{BLACKLIST_PREFIX}{jti}"))
        except RedisError as exc:
            logger.error("redis_blacklist_read_failed", error=str(exc))
            raise StorageUnavailable(backend="redis") from exc

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Fixed-window counter: ``INCR`` and start the window on the first hit."""
        safe_key = rate_limit_key(key)
        try:
            count = await self._fixed_window(keys=[safe_key], args=[window_seconds])
        except RedisError as exc:
            logger.error("redis_rate_limit_failed", error=str(exc))
            raise StorageUnavailable(backend="redis") from exc
        return int(count) <= limit

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` used in tests and local dev.

    State is per process, so blacklists and rate limits are not shared
    between workers.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._blacklist: Dict[str, float] = {}
        self._counters: Dict[str, Tuple[int, float]] = {}

    def verify_connection(self) -> None:
        return None

    def _prune(self, now: float) -> None:
        for jti in [j for j, exp in self._blacklist.items() if exp <= now]:
            self._blacklist.pop(jti, None)
        for key in [k for k, (_, end) in self._counters.items() if end <= now]:
            self._counters.pop(key, None)

    async def blacklist_token(self, jti: str, expires_at: datetime) -> bool:
        now = self._clock()
        ttl = remaining_ttl_seconds(expires_at, now)
        if ttl <= 0:
            return False
        with self._lock:
            self._prune(now)
            self._blacklist[jti] = now + ttl
        return True

    async def is_token_blacklisted(self, jti: str) -> bool:
        now = self._clock()
        with self._lock:
            expires = self._blacklist.get(jti)
            return expires is not None and expires > now

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        safe_key = rate_limit_key(key)
        with self._lock:
            count, window_end = self._counters.get(safe_key, (0, now + window_seconds))
            if window_end <= now:
                count, window_end = 0, now + window_seconds
            count += 1
            self._counters[safe_key] = (count, window_end)
        return count <= limit

    async def close(self) -> None:
        with self._lock:
            self._blacklist.clear()
            self._counters.clear()
