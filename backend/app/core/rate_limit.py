"""
Fixed-window rate limiting on top of the shared cache (Redis in deployments).
The counter for `scope:identifier` expires exactly one window after its first hit.
When the cache fails the limiter allows the request (fail open).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from app.config import Settings, settings
from app.core.cache import TTL_PERSISTENT, CacheBackend
from app.core.metrics import CACHE_ERRORS, RATE_LIMIT_DECISIONS

logger = logging.getLogger(__name__)

POLICY_LOGIN = "login"
POLICY_SIGNUP = "signup"
POLICY_FORGOT_PASSWORD = "forgot_password"
POLICY_PASSWORD_RESET = "password_reset"
POLICY_CHAT_SEND = "chat_send"
POLICY_API_READ = "api_read"
POLICY_API_WRITE = "api_write"

RATE_LIMIT_MESSAGE = "Muitas tentativas. Tente novamente mais tarde."


@dataclass(frozen=True)
class RateLimitPolicy:
    """Configuration for one operation class."""
    limit: int  # Maximum requests allowed per window
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # unix timestamp at which the current window's counter expires
    retry_after: int  # seconds until reset_at (0 when allowed)


def policies_from_settings(s: Settings | None = None) -> dict[str, RateLimitPolicy]:
    s = s or settings
    return {
        POLICY_LOGIN: RateLimitPolicy(s.rate_limit_login_limit, s.rate_limit_login_window_seconds),
        POLICY_SIGNUP: RateLimitPolicy(s.rate_limit_signup_limit, s.rate_limit_signup_window_seconds),
        POLICY_FORGOT_PASSWORD: RateLimitPolicy(
            s.rate_limit_forgot_password_limit, s.rate_limit_forgot_password_window_seconds
        ),
        POLICY_PASSWORD_RESET: RateLimitPolicy(
            s.rate_limit_password_reset_limit, s.rate_limit_password_reset_window_seconds
        ),
        POLICY_CHAT_SEND: RateLimitPolicy(s.rate_limit_chat_send_limit, s.rate_limit_chat_send_window_seconds),
        POLICY_API_READ: RateLimitPolicy(s.rate_limit_api_read_limit, s.rate_limit_api_read_window_seconds),
        POLICY_API_WRITE: RateLimitPolicy(s.rate_limit_api_write_limit, s.rate_limit_api_write_window_seconds),
    }


def rate_limit_key(scope: str, identifier: str) -> str:
    return f"rate_limit:{scope}:{identifier}"


class RateLimiter:
    def __init__(
        self,
        cache: CacheBackend,
        policies: dict[str, RateLimitPolicy] | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self.policies = policies if policies is not None else policies_from_settings()
        self._enabled = enabled
        self._clock = clock

    def _admit(self, limit: int, window_seconds: int) -> RateLimitResult:
        return RateLimitResult(True, limit, limit, self._clock() + window_seconds, 0)

    async def check(self, scope: str, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count one request for `identifier` under `scope` and decide whether it is admitted.

        A denied request does not touch the counter, and its reset time is the counter's
        live expiry rather than a fresh window, so repeated denials never extend the wait.
        The read and the increment are separate calls: under contention one extra request
        per window may slip through.
        """
        if not self._enabled:
            return self._admit(limit, window_seconds)

        key = rate_limit_key(scope, identifier)
        now = self._clock()
        try:
            current = int(await self._cache.get(key) or 0)
            if current >= limit:
                ttl = await self._cache.ttl(key)
                if ttl == TTL_PERSISTENT:
                    # Counter lost its expiry (INCR landed, EXPIRE did not): attach one or it never resets
                    await self._cache.expire(key, window_seconds)
                reset_in = ttl if 0 < ttl <= window_seconds else window_seconds
                RATE_LIMIT_DECISIONS.labels(scope, "deny").inc()
                logger.info("Rate limit: %s exceeded for %s (%d/%d)", scope, identifier, current, limit)
                return RateLimitResult(False, limit, 0, now + reset_in, max(1, reset_in))

            new_count = await self._cache.increment(key, window_seconds)
            ttl = await self._cache.ttl(key)
        except Exception as e:
            CACHE_ERRORS.labels("rate_limit").inc()
            logger.warning("Rate limit: cache error in %s check, allowing request: %s", scope, e)
            return self._admit(limit, window_seconds)

        reset_in = ttl if 0 < ttl <= window_seconds else window_seconds
        RATE_LIMIT_DECISIONS.labels(scope, "allow").inc()
        return RateLimitResult(True, limit, max(0, limit - new_count), now + reset_in, 0)

    async def check_policy(self, name: str, identifier: str) -> RateLimitResult:
        """Check against a configured policy (login, signup, ...). Unknown names are admitted."""
        policy = self.policies.get(name)
        if policy is None:
            logger.warning("Unknown rate limit policy: %s", name)
            return self._admit(0, 0)
        return await self.check(name, identifier, policy.limit, policy.window_seconds)

    async def reset(self, scope: str, identifier: str) -> None:
        """Drop the counter (e.g. login attempts after a successful login)."""
        try:
            await self._cache.delete(rate_limit_key(scope, identifier))
        except Exception as e:
            CACHE_ERRORS.labels("delete").inc()
            logger.warning("Rate limit: error resetting %s for %s: %s", scope, identifier, e)
