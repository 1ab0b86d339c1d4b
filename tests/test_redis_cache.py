"""Unit tests for the Redis lock helper against an in-process fake client."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatekeep.service.errors import OtpInvalidError
from gatekeep.service.otp import OtpEngine
from gatekeep.storage.models import USER_OTPS, CreateIdentityRequest
from gatekeep.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    def __init__(self):
        self.values = {}
        self.expiries = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.expiries[key] = ex
        return True

    async def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


class UnreachableRedis:
    async def set(self, key, value, nx=False, ex=None):
        raise RedisConnectionError("connection refused")

    async def eval(self, script, numkeys, key, token):
        raise RedisConnectionError("connection refused")


def _make_cache(client=None) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://fake"
    cache.client = client or FakeAsyncRedis()
    return cache


class TestLocks:
    """Tests for SET NX locks."""

    async def test_lock_is_exclusive_until_released(self):
        cache = _make_cache()

        token = await cache.acquire_lock("otp:o1", ttl_seconds=30)
        second = await cache.acquire_lock("otp:o1", ttl_seconds=30)

        assert token
        assert second is None
        assert cache.client.expiries["lock:otp:o1"] == 30

        assert await cache.release_lock("otp:o1", token) is True
        assert await cache.acquire_lock("otp:o1") is not None

    async def test_release_with_foreign_token_is_ignored(self):
        cache = _make_cache()
        await cache.acquire_lock("otp:o1")

        assert await cache.release_lock("otp:o1", "not-the-owner") is False
        assert "lock:otp:o1" in cache.client.values


class TestOtpLocking:
    """Tests for the OTP engine's use of the lock."""

    @pytest.fixture
    def user(self, directory):
        return directory.create_identity(CreateIdentityRequest(email="user@x.com"))

    async def test_consume_takes_and_releases_lock(self, store, directory, settings, user):
        cache = _make_cache()
        engine = OtpEngine(store, directory, settings, cache=cache)
        record = await engine.request_otp("user@x.com")

        assert await engine.validate_and_consume("user@x.com", record.otp) == user.id
        assert cache.client.values == {}
        assert cache.client.expiries[f"lock:otp:{record.id}"] == 30

    async def test_held_lock_rejects_consumer(self, store, directory, settings, user):
        cache = _make_cache()
        engine = OtpEngine(store, directory, settings, cache=cache)
        record = await engine.request_otp("user@x.com")
        await cache.acquire_lock(f"otp:{record.id}")

        with pytest.raises(OtpInvalidError):
            await engine.validate_and_consume("user@x.com", record.otp)
        assert store.get(USER_OTPS, record.id).data["used"] is False

    async def test_unreachable_redis_falls_back_to_conditional_update(
        self, store, directory, settings, user
    ):
        engine = OtpEngine(store, directory, settings, cache=_make_cache(UnreachableRedis()))
        record = await engine.request_otp("user@x.com")

        assert await engine.validate_and_consume("user@x.com", record.otp) == user.id
        with pytest.raises(OtpInvalidError):
            await engine.validate_and_consume("user@x.com", record.otp)
