"""FastAPI dependencies: shared auth service / rate limiter, client IP, current user, rate limits."""

from typing import Annotated, Callable

from fastapi import Depends, HTTPException, Request

from app.config import settings
from app.core.cache import get_cache
from app.core.rate_limit import RATE_LIMIT_MESSAGE, RateLimiter, RateLimitResult
from app.core.tokens import TokenCodec
from app.db.session import async_session_maker
from app.schemas.auth import AuthError, AuthFailure, UserOut
from app.services.auth_service import AuthService
from app.services.credential_store import SQLCredentialStore

ERROR_STATUS: dict[AuthError, int] = {
    AuthError.INVALID_CREDENTIALS: 401,
    AuthError.ACCOUNT_DISABLED: 403,
    AuthError.INVALID_TOKEN: 401,
    AuthError.USER_NOT_FOUND: 401,
    AuthError.USER_INACTIVE: 401,
    AuthError.REFRESH_TOKEN_INVALID: 401,
    AuthError.REFRESH_TOKEN_EXPIRED: 401,
    AuthError.REFRESH_TOKEN_REVOKED: 401,
    AuthError.EMAIL_TAKEN: 400,
    AuthError.RESET_TOKEN_INVALID: 400,
    AuthError.INTERNAL_ERROR: 500,
}

_auth_service: AuthService | None = None
_rate_limiter: RateLimiter | None = None


def get_auth_service() -> AuthService:
    """Process-wide AuthService wired to the database, the shared cache and the token codec."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService(
            SQLCredentialStore(async_session_maker),
            get_cache(),
            TokenCodec.from_settings(settings),
            settings,
        )
    return _auth_service


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(get_cache(), enabled=settings.rate_limit_enabled)
    return _rate_limiter


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First entry is the original client
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def auth_http_error(failure: AuthFailure) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(failure.error, 401), detail=failure.message)


def get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def get_current_user(
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> UserOut:
    token = get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Não autenticado")
    result = await service.verify_access_token(token)
    if isinstance(result, AuthFailure):
        raise auth_http_error(result)
    return result.user


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def _raise_if_denied(result: RateLimitResult) -> RateLimitResult:
    if not result.allowed:
        raise HTTPException(status_code=429, detail=RATE_LIMIT_MESSAGE, headers=rate_limit_headers(result))
    return result


def rate_limited(policy: str) -> Callable:
    """Dependency enforcing a rate-limit policy per client IP. Raises 429 with Retry-After when exceeded."""

    async def dependency(
        request: Request,
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> RateLimitResult:
        return _raise_if_denied(await limiter.check_policy(policy, get_client_ip(request)))

    return dependency


def rate_limited_per_user(policy: str) -> Callable:
    """Same as rate_limited, keyed by the authenticated user's id."""

    async def dependency(
        user: Annotated[UserOut, Depends(get_current_user)],
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> RateLimitResult:
        return _raise_if_denied(await limiter.check_policy(policy, user.id))

    return dependency
