"""Password hashing and refresh-token generation."""

import hashlib
import re
import secrets

import bcrypt

from app.config import settings

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def hash_password(password: str) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit); no passlib re-encoding."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt(rounds=settings.bcrypt_rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes; malformed hashes never match."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_refresh_token() -> str:
    """Generate a new refresh token (plain string; caller must hash and store)."""
    return secrets.token_urlsafe(32)


def create_password_reset_token() -> str:
    """Generate the token mailed for a password reset. Stored hashed like refresh tokens."""
    return secrets.token_hex(32)


def hash_refresh_token(token: str) -> str:
    """SHA256 hash of a refresh or password reset token for storage."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def validate_password_strength(password: str) -> list[str]:
    """Return the list of unmet password rules (empty when the password is acceptable)."""
    errors: list[str] = []
    if len(password) < 8:
        errors.append("Senha deve ter pelo menos 8 caracteres")
    if not re.search(r"[A-Z]", password):
        errors.append("Senha deve conter pelo menos uma letra maiúscula")
    if not re.search(r"[a-z]", password):
        errors.append("Senha deve conter pelo menos uma letra minúscula")
    if not re.search(r"\d", password):
        errors.append("Senha deve conter pelo menos um número")
    if not _SPECIAL_CHARS.search(password):
        errors.append("Senha deve conter pelo menos um caractere especial")
    return errors
