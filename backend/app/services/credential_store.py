"""
Credential store over the relational database: users, refresh tokens, password reset
tokens, activity log.
Each call runs in its own session; returned ORM objects are detached but fully loaded
(the session maker is configured with expire_on_commit=False).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.auth import hash_refresh_token
from app.models.activity_log import ActivityLog
from app.models.password_reset_token import PasswordResetToken
from app.models.refresh_token import RefreshToken
from app.models.user import User


class EmailTakenError(Exception):
    """A user with this email already exists."""


class CredentialStore(Protocol):
    async def find_user_by_email(self, email: str) -> User | None: ...

    async def find_user_by_id(self, user_id: str) -> User | None: ...

    async def create_user(self, email: str, password_hash: str, name: str) -> User: ...

    async def update_user(self, user_id: str, **patch: Any) -> User | None: ...

    async def create_refresh_token(self, user_id: str, token: str, expires_at: datetime) -> RefreshToken: ...

    async def find_refresh_token_by_value(self, token: str) -> RefreshToken | None: ...

    async def revoke_refresh_token(self, token_id: str) -> None: ...

    async def revoke_refresh_token_by_value(self, token: str, user_id: str | None = None) -> bool: ...

    async def rotate_refresh_token(
        self,
        old_token_id: str,
        user_id: str,
        new_token: str,
        expires_at: datetime,
        revoke_all: bool = False,
    ) -> RefreshToken | None: ...

    async def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime, ip_address: str | None = None
    ) -> PasswordResetToken: ...

    async def find_password_reset_token_by_value(self, token: str) -> PasswordResetToken | None: ...

    async def complete_password_reset(self, reset_token_id: str, user_id: str, password_hash: str) -> bool: ...

    async def log_activity(
        self,
        user_id: str | None,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None: ...


class SQLCredentialStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def find_user_by_email(self, email: str) -> User | None:
        async with self._session_maker() as session:
            r = await session.execute(select(User).where(User.email == email.strip().lower()))
            return r.scalar_one_or_none()

    async def find_user_by_id(self, user_id: str) -> User | None:
        async with self._session_maker() as session:
            return await session.get(User, user_id)

    async def create_user(self, email: str, password_hash: str, name: str) -> User:
        user = User(email=email.strip().lower(), password_hash=password_hash, name=name)
        try:
            async with self._session_maker() as session, session.begin():
                session.add(user)
        except IntegrityError as e:
            raise EmailTakenError(email) from e
        return user

    async def update_user(self, user_id: str, **patch: Any) -> User | None:
        async with self._session_maker() as session, session.begin():
            user = await session.get(User, user_id)
            if user is None:
                return None
            for field, value in patch.items():
                setattr(user, field, value)
            user.updated_at = datetime.now(timezone.utc)
        return user

    async def create_refresh_token(self, user_id: str, token: str, expires_at: datetime) -> RefreshToken:
        row = RefreshToken(user_id=user_id, token_hash=hash_refresh_token(token), expires_at=expires_at)
        async with self._session_maker() as session, session.begin():
            session.add(row)
        return row

    async def find_refresh_token_by_value(self, token: str) -> RefreshToken | None:
        async with self._session_maker() as session:
            r = await session.execute(
                select(RefreshToken)
                .options(selectinload(RefreshToken.user))
                .where(RefreshToken.token_hash == hash_refresh_token(token))
            )
            return r.scalar_one_or_none()

    async def revoke_refresh_token(self, token_id: str) -> None:
        async with self._session_maker() as session, session.begin():
            await session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == token_id)
                .values(is_revoked=True, updated_at=datetime.now(timezone.utc))
            )

    async def revoke_refresh_token_by_value(self, token: str, user_id: str | None = None) -> bool:
        stmt = update(RefreshToken).where(
            RefreshToken.token_hash == hash_refresh_token(token),
            RefreshToken.is_revoked.is_(False),
        )
        if user_id is not None:
            stmt = stmt.where(RefreshToken.user_id == user_id)
        async with self._session_maker() as session, session.begin():
            result = await session.execute(stmt.values(is_revoked=True, updated_at=datetime.now(timezone.utc)))
        return result.rowcount > 0

    async def rotate_refresh_token(
        self,
        old_token_id: str,
        user_id: str,
        new_token: str,
        expires_at: datetime,
        revoke_all: bool = False,
    ) -> RefreshToken | None:
        """
        Revoke the old token and store the new one in a single transaction.
        Returns None (and stores nothing) when the old token was already revoked,
        e.g. by a concurrent rotation of the same value.
        """
        now = datetime.now(timezone.utc)
        async with self._session_maker() as session, session.begin():
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == old_token_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, updated_at=now)
            )
            if result.rowcount != 1:
                return None
            if revoke_all:
                await session.execute(
                    update(RefreshToken)
                    .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
                    .values(is_revoked=True, updated_at=now)
                )
            row = RefreshToken(user_id=user_id, token_hash=hash_refresh_token(new_token), expires_at=expires_at)
            session.add(row)
        return row

    async def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime, ip_address: str | None = None
    ) -> PasswordResetToken:
        """Store a new reset token; earlier unused tokens of the user stop working."""
        row = PasswordResetToken(
            user_id=user_id,
            token_hash=hash_refresh_token(token),
            expires_at=expires_at,
            ip_address=ip_address,
        )
        async with self._session_maker() as session, session.begin():
            await session.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.user_id == user_id, PasswordResetToken.used.is_(False))
                .values(used=True)
            )
            session.add(row)
        return row

    async def find_password_reset_token_by_value(self, token: str) -> PasswordResetToken | None:
        async with self._session_maker() as session:
            r = await session.execute(
                select(PasswordResetToken)
                .options(selectinload(PasswordResetToken.user))
                .where(PasswordResetToken.token_hash == hash_refresh_token(token))
            )
            return r.scalar_one_or_none()

    async def complete_password_reset(self, reset_token_id: str, user_id: str, password_hash: str) -> bool:
        """
        Consume the reset token, set the new password hash and revoke every live refresh
        token of the user, all in one transaction. Returns False (and changes nothing)
        when the token was already consumed.
        """
        now = datetime.now(timezone.utc)
        async with self._session_maker() as session, session.begin():
            result = await session.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == reset_token_id, PasswordResetToken.used.is_(False))
                .values(used=True)
            )
            if result.rowcount != 1:
                return False
            await session.execute(
                update(User).where(User.id == user_id).values(password_hash=password_hash, updated_at=now)
            )
            await session.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.user_id == user_id, PasswordResetToken.used.is_(False))
                .values(used=True)
            )
            await session.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, updated_at=now)
            )
        return True

    async def log_activity(
        self,
        user_id: str | None,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        async with self._session_maker() as session, session.begin():
            session.add(
                ActivityLog(
                    user_id=user_id,
                    action=action,
                    details=details,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
