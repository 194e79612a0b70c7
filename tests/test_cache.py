"""Revocation cache and rate limiting tests."""

from datetime import datetime, timedelta, timezone

import pytest

from pixora_auth.service import runtime as runtime_module
from pixora_auth.storage.errors import StorageUnavailable
from pixora_auth.storage.redis_cache import MemoryCache, rate_limit_key, remaining_ttl_seconds


def _at(clock, seconds: float) -> datetime:
    return datetime.fromtimestamp(clock.now + seconds, tz=timezone.utc)


class TestRemainingTtl:
    def test_rounds_up_partial_seconds(self):
        expires = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert remaining_ttl_seconds(expires, expires.timestamp() - 0.2) == 1
        assert remaining_ttl_seconds(expires, expires.timestamp() - 10.5) == 11

    def test_expired_is_zero(self):
        expires = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert remaining_ttl_seconds(expires, expires.timestamp()) == 0
        assert remaining_ttl_seconds(expires, expires.timestamp() + 5) == 0

    def test_naive_datetimes_are_utc(self):
        aware = datetime(2026, 1, 1, tzinfo=timezone.utc)
        naive = datetime(2026, 1, 1)
        now = aware.timestamp() - 60
        assert remaining_ttl_seconds(naive, now) == remaining_ttl_seconds(aware, now)


class TestBlacklist:
    async def test_blacklisted_until_token_expiry(self, cache, clock):
        assert await cache.blacklist_token("jti-1", _at(clock, 900)) is True
        assert await cache.is_token_blacklisted("jti-1")

        clock.advance(899)
        assert await cache.is_token_blacklisted("jti-1")
        clock.advance(1)
        assert not await cache.is_token_blacklisted("jti-1")

    async def test_expired_token_not_written(self, cache, clock):
        assert await cache.blacklist_token("jti-old", _at(clock, -1)) is False
        assert not await cache.is_token_blacklisted("jti-old")

    async def test_blacklisting_twice_is_harmless(self, cache, clock):
        await cache.blacklist_token("jti-1", _at(clock, 60))
        await cache.blacklist_token("jti-1", _at(clock, 60))
        assert await cache.is_token_blacklisted("jti-1")

    async def test_unknown_jti(self, cache):
        assert not await cache.is_token_blacklisted("never-seen")


class TestRateLimit:
    async def test_fixed_window(self, cache, clock):
        results = [await cache.check_rate_limit("login:1.2.3.4", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

        clock.advance(60)
        assert await cache.check_rate_limit("login:1.2.3.4", 3, 60)

    async def test_keys_are_independent(self, cache):
        assert await cache.check_rate_limit("login:a", 1, 60)
        assert not await cache.check_rate_limit("login:a", 1, 60)
        assert await cache.check_rate_limit("login:b", 1, 60)

    def test_keys_are_hashed(self):
        key = rate_limit_key("reset:a@x.com")
        assert key.startswith("rate:")
        assert "a@x.com" not in key
        assert key == rate_limit_key("reset:a@x.com")


class _DownCache(MemoryCache):
    async def check_rate_limit(self, key, limit, window_seconds):
        raise StorageUnavailable(backend="redis")


class _FakeRuntime:
    def __init__(self, cache):
        self.cache = cache


class TestRuntimeRateLimit:
    """The request-path helper fails open and normalizes its arguments."""

    async def test_fails_open_when_cache_unavailable(self):
        runtime = _FakeRuntime(_DownCache())
        assert await runtime_module.check_rate_limit(runtime, "login:x", 1, 60) is True

    async def test_non_positive_limit_disables_check(self):
        runtime = _FakeRuntime(_DownCache())
        assert await runtime_module.check_rate_limit(runtime, "login:x", 0, 60) is True

    async def test_enforces_limit(self, cache):
        runtime = _FakeRuntime(cache)
        assert await runtime_module.check_rate_limit(runtime, "login:x", 1, 60)
        assert not await runtime_module.check_rate_limit(runtime, "login:x", 1, 60)

    async def test_default_window_when_not_positive(self, cache, clock):
        runtime = _FakeRuntime(cache)
        assert await runtime_module.check_rate_limit(runtime, "login:y", 1, 0)
        assert not await runtime_module.check_rate_limit(runtime, "login:y", 1, 0)
        clock.advance(60)
        assert await runtime_module.check_rate_limit(runtime, "login:y", 1, 0)


class TestMemoryCacheClose:
    async def test_close_clears_state(self, cache, clock):
        await cache.blacklist_token("jti-1", _at(clock, 60))
        await cache.close()
        assert not await cache.is_token_blacklisted("jti-1")


@pytest.mark.parametrize("limit", [1, 5])
async def test_limit_boundary(cache, limit):
    allowed = [await cache.check_rate_limit("k", limit, 60) for _ in range(limit + 1)]
    assert allowed.count(True) == limit
    assert allowed[-1] is False
