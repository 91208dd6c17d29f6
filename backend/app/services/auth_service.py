"""
Authentication service: login, access-token verification, refresh-token rotation,
password reset and cache invalidation.

The credential store is the source of truth and its failures fail the operation
(reported as ``internal_error``). The cache only accelerates reads: every cache call
goes through a best-effort helper, so a cache outage changes latency, never outcomes.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from app.config import Settings, settings as default_settings
from app.core.auth import create_password_reset_token, create_refresh_token, hash_password, verify_password
from app.core.cache import CacheBackend
from app.core.metrics import CACHE_ERRORS, LOGIN_ATTEMPTS
from app.core.tokens import InvalidTokenError, TokenCodec
from app.models.activity_log import (
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    LOGOUT,
    PASSWORD_RESET_COMPLETED,
    PASSWORD_RESET_REQUESTED,
    REGISTER,
    TOKEN_REFRESH,
)
from app.models.user import User
from app.schemas.auth import (
    AuthError,
    AuthFailure,
    AuthResult,
    LoginSuccess,
    PasswordResetRequested,
    PasswordResetRequestResult,
    PasswordResetResult,
    PasswordResetSuccess,
    RefreshResult,
    RefreshSuccess,
    UserOut,
    VerifyResult,
    VerifySuccess,
)
from app.services.credential_store import CredentialStore, EmailTakenError

logger = logging.getLogger(__name__)

# Compared against when the email is unknown so both failure paths cost one bcrypt check
_DUMMY_PASSWORD = "servicos-ja-user-that-never-exists"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def user_cache_key(email: str) -> str:
    return f"user:{normalize_email(email)}"


def session_cache_key(user_id: str) -> str:
    return f"session:{user_id}"


def token_cache_key(token: str) -> str:
    return f"token:{token}"


def password_reset_cache_key(user_id: str) -> str:
    return f"user_reset:{user_id}"


async def log_password_reset(email: str, token: str) -> None:
    """Default reset sender when no mailer is wired: records that a reset was issued, never the token."""
    logger.info("Password reset issued for %s (no mail sender configured)", email)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _fail(error: AuthError) -> AuthFailure:
    return AuthFailure(error=error)


class AuthService:
    def __init__(
        self,
        store: CredentialStore,
        cache: CacheBackend,
        codec: TokenCodec,
        settings: Settings | None = None,
        password_hasher: Callable[[str], str] = hash_password,
        password_verifier: Callable[[str, str], bool] = verify_password,
        password_reset_sender: Callable[[str, str], Awaitable[None]] = log_password_reset,
    ) -> None:
        self._store = store
        self._cache = cache
        self._codec = codec
        self._settings = settings or default_settings
        self._hash_password = password_hasher
        self._verify_password = password_verifier
        self._send_password_reset = password_reset_sender
        self._dummy_hash: str | None = None

    # ─── Best-effort side effects ───────────────
    async def _best_effort(self, what: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await func(*args, **kwargs); on failure log and return None instead of raising."""
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.warning("Auth: %s failed, continuing: %s", what, e)
            return None

    async def _cache_get(self, key: str) -> Any | None:
        try:
            return await self._cache.get(key)
        except Exception as e:
            CACHE_ERRORS.labels("get").inc()
            logger.warning("Auth: cache get failed, treating as miss: %s", e)
            return None

    async def _cache_set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self._cache.set(key, value, ttl_seconds)
        except Exception as e:
            CACHE_ERRORS.labels("set").inc()
            logger.warning("Auth: cache set failed: %s", e)

    async def _cache_delete(self, key: str) -> None:
        try:
            await self._cache.delete(key)
        except Exception as e:
            CACHE_ERRORS.labels("delete").inc()
            logger.warning("Auth: cache delete failed: %s", e)

    async def _log_activity(
        self,
        user_id: str | None,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self._best_effort(
            f"activity log {action}",
            self._store.log_activity,
            user_id,
            action,
            details,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # ─── Password & tokens ──────────────────────
    async def _check_password(self, password: str, password_hash: str | None) -> bool:
        if not password_hash:
            return False
        return await asyncio.to_thread(self._verify_password, password, password_hash)

    async def _burn_password_check(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(self._hash_password, _DUMMY_PASSWORD)
        await self._check_password(password, self._dummy_hash)

    def _issue_access_token(self, user: User) -> tuple[str, int]:
        """Sign an access token; also return the whole seconds left until its exp claim."""
        token, claims = self._codec.issue(
            {"sub": str(user.id), "email": user.email},
            self._settings.access_token_expire_seconds,
        )
        return token, TokenCodec.seconds_left(claims)

    def _token_cache_ttl(self, token_seconds_left: int) -> int:
        # A cached token must never outlive the token itself
        return min(self._settings.token_cache_ttl_seconds, token_seconds_left)

    async def _cache_token(self, access_token: str, user: UserOut, seconds_left: int) -> None:
        await self._cache_set(
            token_cache_key(access_token),
            {"user_id": user.id, "email": user.email, "user": user.model_dump(mode="json")},
            self._token_cache_ttl(seconds_left),
        )

    async def _open_session(
        self,
        user: User,
        action: str,
        details: dict | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginSuccess:
        """Issue access + refresh tokens for an authenticated user and warm the caches."""
        now = datetime.now(timezone.utc)
        access_token, seconds_left = self._issue_access_token(user)
        refresh_token = create_refresh_token()
        await self._store.create_refresh_token(
            user.id, refresh_token, now + timedelta(days=self._settings.refresh_token_expire_days)
        )
        user_out = UserOut.model_validate(user)
        await self._cache_set(
            user_cache_key(user.email), user_out.model_dump(mode="json"), self._settings.user_cache_ttl_seconds
        )
        await self._cache_set(
            session_cache_key(user.id),
            {"login_at": now.isoformat(), "ip_address": ip_address},
            self._settings.session_cache_ttl_seconds,
        )
        await self._cache_token(access_token, user_out, seconds_left)
        await self._log_activity(user.id, action, details, ip_address, user_agent)
        return LoginSuccess(
            user=user_out,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._settings.access_token_expire_seconds,
        )

    # ─── Login ──────────────────────────────────
    async def authenticate_user(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        try:
            result = await self._authenticate(normalized, password or "", ip_address, user_agent)
        except Exception:
            logger.exception("Auth: login failed for %s", normalized)
            result = _fail(AuthError.INTERNAL_ERROR)
        LOGIN_ATTEMPTS.labels("success" if isinstance(result, LoginSuccess) else result.error.value).inc()
        return result

    async def _authenticate(
        self,
        email: str,
        password: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthResult:
        if await self._cache_get(user_cache_key(email)) is not None:
            logger.debug("Auth: user cache hit for %s", email)
        # The cached projection holds no password hash: the store is always consulted
        user = await self._store.find_user_by_email(email)
        if user is None:
            await self._burn_password_check(password)
            logger.warning("Failed login for %s from %s: user_not_found", email, ip_address)
            await self._log_activity(None, LOGIN_FAILED, {"reason": "user_not_found", "email": email}, ip_address, user_agent)
            return _fail(AuthError.INVALID_CREDENTIALS)

        if not user.is_active:
            logger.info("Login refused for disabled account %s", user.id)
            return _fail(AuthError.ACCOUNT_DISABLED)

        if not await self._check_password(password, user.password_hash):
            logger.warning("Failed login for %s from %s: invalid_password", email, ip_address)
            await self._log_activity(user.id, LOGIN_FAILED, {"reason": "invalid_password"}, ip_address, user_agent)
            return _fail(AuthError.INVALID_CREDENTIALS)

        updated = await self._store.update_user(user.id, last_login_at=datetime.now(timezone.utc))
        return await self._open_session(
            updated or user,
            LOGIN_SUCCESS,
            {"login_method": "email_password"},
            ip_address,
            user_agent,
        )

    # ─── Registration ───────────────────────────
    async def register_user(
        self,
        email: str,
        password: str,
        name: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Create an account and open a session for it, as a login would."""
        normalized = normalize_email(email)
        try:
            if await self._store.find_user_by_email(normalized) is not None:
                return _fail(AuthError.EMAIL_TAKEN)
            password_hash = await asyncio.to_thread(self._hash_password, password)
            try:
                user = await self._store.create_user(normalized, password_hash, (name or "").strip())
            except EmailTakenError:
                return _fail(AuthError.EMAIL_TAKEN)
            return await self._open_session(user, REGISTER, None, ip_address, user_agent)
        except Exception:
            logger.exception("Auth: registration failed for %s", normalized)
            return _fail(AuthError.INTERNAL_ERROR)

    # ─── Access token verification ──────────────
    async def verify_access_token(self, token: str) -> VerifyResult:
        try:
            return await self._verify(token)
        except Exception:
            logger.exception("Auth: token verification failed")
            return _fail(AuthError.INTERNAL_ERROR)

    @staticmethod
    def _user_from_cached_token(cached: Any) -> UserOut | None:
        if not isinstance(cached, dict) or not isinstance(cached.get("user"), dict):
            return None
        try:
            return UserOut.model_validate(cached["user"])
        except ValidationError:
            return None

    async def _verify(self, token: str) -> VerifyResult:
        token = (token or "").strip()
        if not token:
            return _fail(AuthError.INVALID_TOKEN)

        # Cache entries expire no later than the token, so a hit needs no signature check
        cached_user = self._user_from_cached_token(await self._cache_get(token_cache_key(token)))
        if cached_user is not None:
            return VerifySuccess(user=cached_user)

        try:
            payload = self._codec.verify(token)
        except InvalidTokenError:
            return _fail(AuthError.INVALID_TOKEN)
        user_id = payload.get("sub")
        if not user_id:
            return _fail(AuthError.INVALID_TOKEN)

        user = await self._store.find_user_by_id(str(user_id))
        if user is None:
            return _fail(AuthError.USER_NOT_FOUND)
        if not user.is_active:
            return _fail(AuthError.USER_INACTIVE)

        user_out = UserOut.model_validate(user)
        await self._cache_token(token, user_out, TokenCodec.seconds_left(payload))
        return VerifySuccess(user=user_out)

    # ─── Refresh (rotation) ─────────────────────
    async def refresh_access_token(self, refresh_token: str) -> RefreshResult:
        try:
            return await self._refresh((refresh_token or "").strip())
        except Exception:
            logger.exception("Auth: token refresh failed")
            return _fail(AuthError.INTERNAL_ERROR)

    async def _refresh(self, refresh_token: str) -> RefreshResult:
        if not refresh_token:
            return _fail(AuthError.REFRESH_TOKEN_INVALID)
        record = await self._store.find_refresh_token_by_value(refresh_token)
        if record is None:
            return _fail(AuthError.REFRESH_TOKEN_INVALID)
        if record.is_revoked:
            return _fail(AuthError.REFRESH_TOKEN_REVOKED)
        now = datetime.now(timezone.utc)
        if _as_utc(record.expires_at) <= now:
            return _fail(AuthError.REFRESH_TOKEN_EXPIRED)

        user = record.user
        if user is None:
            return _fail(AuthError.USER_NOT_FOUND)
        if not user.is_active:
            return _fail(AuthError.USER_INACTIVE)

        new_refresh = create_refresh_token()
        rotated = await self._store.rotate_refresh_token(
            record.id,
            user.id,
            new_refresh,
            now + timedelta(days=self._settings.refresh_token_expire_days),
            revoke_all=self._settings.single_session,
        )
        if rotated is None:
            logger.warning("Refresh token %s was rotated concurrently; refusing reuse", record.id)
            return _fail(AuthError.REFRESH_TOKEN_REVOKED)

        access_token, seconds_left = self._issue_access_token(user)
        user_out = UserOut.model_validate(user)
        await self._cache_token(access_token, user_out, seconds_left)
        await self._log_activity(user.id, TOKEN_REFRESH)
        return RefreshSuccess(
            user=user_out,
            access_token=access_token,
            refresh_token=new_refresh,
            expires_in=self._settings.access_token_expire_seconds,
        )

    # ─── Logout & cache invalidation ────────────
    async def clear_user_cache(self, user_id: str, email: str | None = None) -> None:
        """Drop cached session state so the next call goes to the store. Access tokens stay valid."""
        await self._cache_delete(session_cache_key(user_id))
        if email:
            await self._cache_delete(user_cache_key(email))

    async def invalidate_token(self, access_token: str) -> None:
        await self._cache_delete(token_cache_key(access_token))

    async def logout_user(
        self,
        refresh_token: str | None = None,
        user_id: str | None = None,
        access_token: str | None = None,
        email: str | None = None,
    ) -> bool:
        """Revoke the refresh token and forget cached session state. Returns True if a token was revoked."""
        revoked = False
        if refresh_token:
            revoked = await self._store.revoke_refresh_token_by_value(refresh_token, user_id)
        if access_token:
            await self.invalidate_token(access_token)
        if user_id:
            await self.clear_user_cache(user_id, email)
            await self._log_activity(user_id, LOGOUT, {"method": "manual"})
        return revoked

    # ─── Password reset ─────────────────────────
    async def request_password_reset(
        self,
        email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PasswordResetRequestResult:
        """Issue a reset token for an active account. The answer never reveals whether the email exists."""
        normalized = normalize_email(email)
        try:
            await self._request_password_reset(normalized, ip_address, user_agent)
        except Exception:
            logger.exception("Auth: password reset request failed for %s", normalized)
            return _fail(AuthError.INTERNAL_ERROR)
        return PasswordResetRequested()

    async def _reset_request_allowed(self, user_id: str) -> bool:
        try:
            count = await self._cache.increment(
                password_reset_cache_key(user_id), self._settings.password_reset_user_window_seconds
            )
        except Exception as e:
            CACHE_ERRORS.labels("increment").inc()
            logger.warning("Auth: reset counter unavailable, allowing request: %s", e)
            return True
        return count <= self._settings.password_reset_user_limit

    async def _request_password_reset(
        self,
        email: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        user = await self._store.find_user_by_email(email) if email else None
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account %s from %s", email, ip_address)
            return
        if not await self._reset_request_allowed(user.id):
            logger.warning("Password reset limit reached for user %s", user.id)
            return

        token = create_password_reset_token()
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=self._settings.password_reset_token_expire_minutes)
        await self._store.create_password_reset_token(user.id, token, expires_at, ip_address)
        await self._best_effort("password reset delivery", self._send_password_reset, user.email, token)
        await self._log_activity(user.id, PASSWORD_RESET_REQUESTED, {"email": user.email}, ip_address, user_agent)

    async def reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PasswordResetResult:
        """
        Set a new password from a reset token. On success every refresh token of the user is
        revoked and cached session state is dropped; access tokens run out on their own.
        """
        try:
            return await self._reset_password((token or "").strip(), new_password, ip_address, user_agent)
        except Exception:
            logger.exception("Auth: password reset failed")
            return _fail(AuthError.INTERNAL_ERROR)

    async def _reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> PasswordResetResult:
        if not token:
            return _fail(AuthError.RESET_TOKEN_INVALID)
        record = await self._store.find_password_reset_token_by_value(token)
        if record is None or record.used or _as_utc(record.expires_at) <= datetime.now(timezone.utc):
            return _fail(AuthError.RESET_TOKEN_INVALID)
        user = record.user
        if user is None:
            return _fail(AuthError.USER_NOT_FOUND)
        if not user.is_active:
            return _fail(AuthError.USER_INACTIVE)

        password_hash = await asyncio.to_thread(self._hash_password, new_password)
        if not await self._store.complete_password_reset(record.id, user.id, password_hash):
            logger.warning("Reset token %s was consumed concurrently", record.id)
            return _fail(AuthError.RESET_TOKEN_INVALID)

        await self.clear_user_cache(user.id, user.email)
        await self._log_activity(user.id, PASSWORD_RESET_COMPLETED, None, ip_address, user_agent)
        logger.info("Password reset completed for user %s", user.id)
        return PasswordResetSuccess()
