"""Unit tests for the fixed-window rate limiter."""

from unittest.mock import AsyncMock

import pytest

from app.config import Settings
from app.core.cache import TTL_PERSISTENT, MemoryCache
from app.core.rate_limit import (
    POLICY_API_WRITE,
    POLICY_CHAT_SEND,
    POLICY_FORGOT_PASSWORD,
    POLICY_LOGIN,
    POLICY_PASSWORD_RESET,
    POLICY_SIGNUP,
    RateLimiter,
    RateLimitPolicy,
    policies_from_settings,
    rate_limit_key,
)

from conftest import FailingCache, FakeClock


def _limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    # One clock drives both the counter expiry and the reported reset times
    return RateLimiter(MemoryCache(clock=clock), clock=clock, **kwargs)


def test_rate_limit_key_format():
    assert rate_limit_key("login", "10.0.0.1") == "rate_limit:login:10.0.0.1"


@pytest.mark.asyncio
async def test_admits_exactly_limit_then_denies():
    clock = FakeClock()
    limiter = _limiter(clock)
    results = [await limiter.check("api_write", "user-1", 3, 60) for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[-1].retry_after == 60
    assert results[-1].reset_at == clock.now + 60


@pytest.mark.asyncio
async def test_window_reopens_after_counter_expires():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        assert (await limiter.check("api_write", "user-1", 3, 60)).allowed
    assert not (await limiter.check("api_write", "user-1", 3, 60)).allowed
    clock.advance(60)
    result = await limiter.check("api_write", "user-1", 3, 60)
    assert result.allowed
    assert result.remaining == 2


@pytest.mark.asyncio
async def test_denial_reports_live_counter_expiry_not_a_new_window():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(2):
        await limiter.check("signup", "1.2.3.4", 2, 3600)
    clock.advance(1000)
    first_denial = await limiter.check("signup", "1.2.3.4", 2, 3600)
    clock.advance(500)
    second_denial = await limiter.check("signup", "1.2.3.4", 2, 3600)
    assert not first_denial.allowed and not second_denial.allowed
    assert first_denial.retry_after == 2600
    assert second_denial.retry_after == 2100
    # Both denials point at the same reset instant: retrying does not extend the window
    assert first_denial.reset_at == second_denial.reset_at


@pytest.mark.asyncio
async def test_identifiers_and_scopes_are_independent():
    clock = FakeClock()
    limiter = _limiter(clock)
    assert (await limiter.check("login", "1.1.1.1", 1, 60)).allowed
    assert not (await limiter.check("login", "1.1.1.1", 1, 60)).allowed
    assert (await limiter.check("login", "2.2.2.2", 1, 60)).allowed
    assert (await limiter.check("signup", "1.1.1.1", 1, 60)).allowed


@pytest.mark.asyncio
async def test_login_scenario_sixth_attempt_denied_then_admitted_after_window():
    clock = FakeClock()
    limiter = _limiter(clock, policies={POLICY_LOGIN: RateLimitPolicy(5, 15 * 60)})
    outcomes = [await limiter.check_policy(POLICY_LOGIN, "203.0.113.9") for _ in range(6)]
    assert all(r.allowed for r in outcomes[:5])
    sixth = outcomes[5]
    assert not sixth.allowed
    assert sixth.reset_at > clock.now
    clock.advance(15 * 60)
    assert (await limiter.check_policy(POLICY_LOGIN, "203.0.113.9")).allowed


@pytest.mark.asyncio
async def test_fails_open_when_cache_raises():
    cache = FailingCache()
    limiter = RateLimiter(cache)
    for _ in range(20):
        result = await limiter.check("login", "10.0.0.1", 1, 60)
        assert result.allowed
    assert cache.calls > 0


@pytest.mark.asyncio
async def test_fails_open_when_increment_raises():
    cache = AsyncMock()
    cache.get.return_value = 0
    cache.increment.side_effect = TimeoutError("redis timeout")
    result = await RateLimiter(cache).check("chat_send", "user-9", 20, 60)
    assert result.allowed


@pytest.mark.asyncio
async def test_denied_request_does_not_increment():
    cache = AsyncMock()
    cache.get.return_value = 5
    cache.ttl.return_value = 42
    result = await RateLimiter(cache).check("login", "10.0.0.1", 5, 900)
    assert not result.allowed
    assert result.retry_after == 42
    cache.increment.assert_not_called()


@pytest.mark.asyncio
async def test_disabled_limiter_admits_without_touching_cache():
    cache = AsyncMock()
    result = await RateLimiter(cache, enabled=False).check("login", "10.0.0.1", 0, 60)
    assert result.allowed
    cache.get.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_policy_is_admitted():
    limiter = RateLimiter(MemoryCache(), policies={})
    assert (await limiter.check_policy("does-not-exist", "x")).allowed


@pytest.mark.asyncio
async def test_reset_clears_counter():
    clock = FakeClock()
    limiter = _limiter(clock)
    await limiter.check("login", "10.0.0.1", 1, 60)
    assert not (await limiter.check("login", "10.0.0.1", 1, 60)).allowed
    await limiter.reset("login", "10.0.0.1")
    assert (await limiter.check("login", "10.0.0.1", 1, 60)).allowed


@pytest.mark.asyncio
async def test_reset_swallows_cache_errors():
    await RateLimiter(FailingCache()).reset("login", "10.0.0.1")


def test_policies_from_settings():
    policies = policies_from_settings(
        Settings(_env_file=None, rate_limit_login_limit=7, rate_limit_login_window_seconds=120)
    )
    assert policies[POLICY_LOGIN] == RateLimitPolicy(7, 120)
    assert policies[POLICY_SIGNUP] == RateLimitPolicy(3, 3600)
    assert policies[POLICY_CHAT_SEND] == RateLimitPolicy(20, 60)
    assert policies[POLICY_API_WRITE].limit == 10
    assert policies[POLICY_FORGOT_PASSWORD] == RateLimitPolicy(3, 3600)
    assert policies[POLICY_PASSWORD_RESET] == RateLimitPolicy(5, 3600)


@pytest.mark.asyncio
async def test_denial_reattaches_expiry_to_counter_without_one():
    # INCR landed but EXPIRE did not: the counter would otherwise block forever
    cache = AsyncMock()
    cache.get.return_value = 5
    cache.ttl.return_value = TTL_PERSISTENT
    result = await RateLimiter(cache).check("login", "10.0.0.1", 5, 900)
    assert not result.allowed
    assert result.retry_after == 900
    cache.expire.assert_awaited_once_with(rate_limit_key("login", "10.0.0.1"), 900)
    cache.increment.assert_not_called()


@pytest.mark.asyncio
async def test_denial_with_live_ttl_leaves_expiry_alone():
    cache = AsyncMock()
    cache.get.return_value = 5
    cache.ttl.return_value = 42
    await RateLimiter(cache).check("login", "10.0.0.1", 5, 900)
    cache.expire.assert_not_called()


@pytest.mark.asyncio
async def test_persistent_counter_reopens_after_window():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    limiter = RateLimiter(cache, clock=clock)
    # Counter stored without a meaningful expiry, then repaired by the first denial
    await cache.set(rate_limit_key("login", "10.0.0.1"), 5, 10**9)
    cache.ttl = AsyncMock(side_effect=[TTL_PERSISTENT])
    assert not (await limiter.check("login", "10.0.0.1", 5, 60)).allowed
    del cache.ttl
    clock.advance(60)
    assert (await limiter.check("login", "10.0.0.1", 5, 60)).allowed
