"""Prometheus counters for the auth and rate-limit paths (exported on /metrics)."""

from prometheus_client import Counter

LOGIN_ATTEMPTS = Counter(
    "auth_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)
RATE_LIMIT_DECISIONS = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions by scope",
    ["scope", "decision"],
)
CACHE_ERRORS = Counter(
    "cache_errors_total",
    "Cache operations that failed and were treated as a miss",
    ["operation"],
)
