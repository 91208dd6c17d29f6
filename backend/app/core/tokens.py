"""Signed access tokens (JWT) with issued-at / expiry claims."""

from __future__ import annotations

import time
from typing import Any

from jose import JWTError, jwt

from app.config import Settings, settings as default_settings


class InvalidTokenError(Exception):
    """Raised for any token that does not verify: malformed, bad signature or expired."""


class TokenCodec:
    def __init__(
        self,
        signing_key: str,
        verification_key: str,
        algorithm: str = "HS256",
        issuer: str | None = None,
        audience: str | None = None,
    ) -> None:
        self._signing_key = signing_key
        self._verification_key = verification_key
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> TokenCodec:
        """HS256 with SECRET_KEY, or RS256 when both PEM keys are configured."""
        s = settings or default_settings
        if s.use_rs256:
            return cls(
                s.jwt_private_key.strip(),
                s.jwt_public_key.strip(),
                "RS256",
                issuer=s.jwt_issuer,
                audience=s.jwt_audience,
            )
        return cls(s.secret_key, s.secret_key, s.jwt_algorithm, issuer=s.jwt_issuer, audience=s.jwt_audience)

    def sign(self, payload: dict[str, Any], ttl_seconds: int) -> str:
        return self.issue(payload, ttl_seconds)[0]

    def issue(self, payload: dict[str, Any], ttl_seconds: int) -> tuple[str, dict[str, Any]]:
        """Sign and also return the claims, so callers can use the real exp (iat is floored)."""
        now = int(time.time())
        claims = dict(payload)
        claims["iat"] = now
        claims["exp"] = now + int(ttl_seconds)
        if self._issuer:
            claims["iss"] = self._issuer
        if self._audience:
            claims["aud"] = self._audience
        result = jwt.encode(claims, self._signing_key, algorithm=self._algorithm)
        token = result if isinstance(result, str) else result.decode("utf-8")
        return token, claims

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token; raise InvalidTokenError otherwise.

        A token is rejected once ``now >= exp``, so a token signed with a zero TTL
        never verifies.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError("invalid token")
        try:
            payload = jwt.decode(
                token,
                self._verification_key,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
            )
        except JWTError as e:
            raise InvalidTokenError("invalid token") from e
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= time.time():
            raise InvalidTokenError("invalid token")
        return payload

    @staticmethod
    def seconds_left(payload: dict[str, Any]) -> int:
        """Whole seconds until the token's exp claim (0 when already expired)."""
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return 0
        return max(0, int(exp - time.time()))
