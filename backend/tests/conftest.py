"""Pytest configuration and shared fixtures: in-memory store and cache fakes, token codec, auth service."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test config before app imports so settings / engine use it
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from app.config import settings
from app.core.auth import hash_password, hash_refresh_token
from app.core.cache import MemoryCache
from app.core.rate_limit import RateLimiter
from app.core.tokens import TokenCodec
from app.services.auth_service import AuthService
from app.services.credential_store import EmailTakenError

TEST_PASSWORD = "Password123!"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FakeUser:
    email: str
    password_hash: str
    name: str = "Test User"
    is_active: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_login_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class FakeRefreshToken:
    user_id: str
    token_hash: str
    expires_at: datetime
    user: FakeUser | None = None
    is_revoked: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)


@dataclass
class FakePasswordResetToken:
    user_id: str
    token_hash: str
    expires_at: datetime
    user: FakeUser | None = None
    used: bool = False
    ip_address: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class FakeCredentialStore:
    """Dict-backed stand-in for SQLCredentialStore. Set `fail` to make every call raise."""

    def __init__(self):
        self.users: dict[str, FakeUser] = {}
        self.tokens: dict[str, FakeRefreshToken] = {}
        self.reset_tokens: dict[str, FakePasswordResetToken] = {}
        self.activity: list[dict] = []
        self.fail = False
        self.fail_activity = False
        self.calls: list[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise ConnectionError("database unavailable")

    def add_user(self, email: str, password: str = TEST_PASSWORD, **kwargs) -> FakeUser:
        user = FakeUser(email=email.lower(), password_hash=hash_password(password), **kwargs)
        self.users[user.id] = user
        return user

    def add_refresh_token(self, user: FakeUser, token: str, expires_at: datetime, is_revoked: bool = False):
        row = FakeRefreshToken(
            user_id=user.id,
            token_hash=hash_refresh_token(token),
            expires_at=expires_at,
            user=user,
            is_revoked=is_revoked,
        )
        self.tokens[row.token_hash] = row
        return row

    def token_for(self, token: str) -> FakeRefreshToken | None:
        return self.tokens.get(hash_refresh_token(token))

    def add_reset_token(self, user: FakeUser, token: str, expires_at: datetime, used: bool = False):
        row = FakePasswordResetToken(
            user_id=user.id, token_hash=hash_refresh_token(token), expires_at=expires_at, user=user, used=used
        )
        self.reset_tokens[row.token_hash] = row
        return row

    def reset_token_for(self, token: str) -> FakePasswordResetToken | None:
        return self.reset_tokens.get(hash_refresh_token(token))

    async def find_user_by_email(self, email):
        self._enter("find_user_by_email")
        return next((u for u in self.users.values() if u.email == email.strip().lower()), None)

    async def find_user_by_id(self, user_id):
        self._enter("find_user_by_id")
        return self.users.get(user_id)

    async def create_user(self, email, password_hash, name):
        self._enter("create_user")
        if any(u.email == email for u in self.users.values()):
            raise EmailTakenError(email)
        user = FakeUser(email=email, password_hash=password_hash, name=name)
        self.users[user.id] = user
        return user

    async def update_user(self, user_id, **patch):
        self._enter("update_user")
        user = self.users.get(user_id)
        if user is None:
            return None
        for k, v in patch.items():
            setattr(user, k, v)
        user.updated_at = _now()
        return user

    async def create_refresh_token(self, user_id, token, expires_at):
        self._enter("create_refresh_token")
        return self.add_refresh_token(self.users[user_id], token, expires_at)

    async def find_refresh_token_by_value(self, token):
        self._enter("find_refresh_token_by_value")
        return self.token_for(token)

    async def revoke_refresh_token(self, token_id):
        self._enter("revoke_refresh_token")
        for row in self.tokens.values():
            if row.id == token_id:
                row.is_revoked = True

    async def revoke_refresh_token_by_value(self, token, user_id=None):
        self._enter("revoke_refresh_token_by_value")
        row = self.token_for(token)
        if row is None or row.is_revoked or (user_id is not None and row.user_id != user_id):
            return False
        row.is_revoked = True
        return True

    async def rotate_refresh_token(self, old_token_id, user_id, new_token, expires_at, revoke_all=False):
        self._enter("rotate_refresh_token")
        old = next((r for r in self.tokens.values() if r.id == old_token_id and not r.is_revoked), None)
        if old is None:
            return None
        old.is_revoked = True
        if revoke_all:
            for row in self.tokens.values():
                if row.user_id == user_id:
                    row.is_revoked = True
        return self.add_refresh_token(self.users[user_id], new_token, expires_at)

    async def create_password_reset_token(self, user_id, token, expires_at, ip_address=None):
        self._enter("create_password_reset_token")
        for row in self.reset_tokens.values():
            if row.user_id == user_id:
                row.used = True
        row = self.add_reset_token(self.users[user_id], token, expires_at)
        row.ip_address = ip_address
        return row

    async def find_password_reset_token_by_value(self, token):
        self._enter("find_password_reset_token_by_value")
        return self.reset_token_for(token)

    async def complete_password_reset(self, reset_token_id, user_id, password_hash):
        self._enter("complete_password_reset")
        row = next((r for r in self.reset_tokens.values() if r.id == reset_token_id and not r.used), None)
        if row is None:
            return False
        self.users[user_id].password_hash = password_hash
        for other in self.reset_tokens.values():
            if other.user_id == user_id:
                other.used = True
        for token in self.tokens.values():
            if token.user_id == user_id:
                token.is_revoked = True
        return True

    async def log_activity(self, user_id, action, details=None, ip_address=None, user_agent=None):
        self.calls.append("log_activity")
        if self.fail_activity:
            raise ConnectionError("activity log unavailable")
        self.activity.append(
            {"user_id": user_id, "action": action, "details": details, "ip_address": ip_address}
        )


class FailingCache:
    """Cache whose every operation raises, as when Redis is unreachable."""

    def __init__(self):
        self.calls = 0

    async def _boom(self, *args, **kwargs):
        self.calls += 1
        raise ConnectionError("redis unavailable")

    get = set = delete = increment = ttl = expire = _boom

    async def close(self):
        pass


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    return FakeCredentialStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def codec():
    return TokenCodec(
        "test-secret-key",
        "test-secret-key",
        "HS256",
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )


@pytest.fixture
def service(store, cache, codec):
    return AuthService(store, cache, codec, settings)


@pytest.fixture
def active_user(store):
    return store.add_user("cliente@servicosja.com", name="Cliente Teste")


@pytest.fixture
def limiter():
    return RateLimiter(MemoryCache())


@pytest_asyncio.fixture
async def client(service, limiter):
    """AsyncClient over the app with the auth service and rate limiter swapped for in-memory ones."""
    from app.api.deps import get_auth_service, get_rate_limiter
    from app.main import app

    app.dependency_overrides[get_auth_service] = lambda: service
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
