"""Auth results: one success type per operation plus a shared failure type."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class AuthError(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"
    INVALID_TOKEN = "invalid_token"
    USER_NOT_FOUND = "user_not_found"
    USER_INACTIVE = "user_inactive"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"
    EMAIL_TAKEN = "email_taken"
    RESET_TOKEN_INVALID = "reset_token_invalid"
    INTERNAL_ERROR = "internal_error"


# User-facing messages. Wrong email and wrong password share one message on purpose.
ERROR_MESSAGES: dict[AuthError, str] = {
    AuthError.INVALID_CREDENTIALS: "Credenciais inválidas",
    AuthError.ACCOUNT_DISABLED: "Conta desativada",
    AuthError.INVALID_TOKEN: "Token inválido",
    AuthError.USER_NOT_FOUND: "Usuário não encontrado",
    AuthError.USER_INACTIVE: "Usuário inativo",
    AuthError.REFRESH_TOKEN_INVALID: "Refresh token inválido",
    AuthError.REFRESH_TOKEN_EXPIRED: "Refresh token expirado",
    AuthError.REFRESH_TOKEN_REVOKED: "Refresh token revogado",
    AuthError.EMAIL_TAKEN: "Email já cadastrado",
    AuthError.RESET_TOKEN_INVALID: "Token inválido ou expirado",
    AuthError.INTERNAL_ERROR: "Erro interno do servidor",
}


class UserOut(BaseModel):
    """Public user projection. Never carries the password hash."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class _Result(BaseModel):
    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class LoginSuccess(_Result):
    success: Literal[True] = True
    user: UserOut
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


class VerifySuccess(_Result):
    success: Literal[True] = True
    user: UserOut


class RefreshSuccess(_Result):
    success: Literal[True] = True
    user: UserOut
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class PasswordResetRequested(_Result):
    """Same answer whether or not the email belongs to an account."""

    success: Literal[True] = True
    message: str = "Se o e-mail estiver cadastrado, você receberá instruções para redefinir sua senha."


class PasswordResetSuccess(_Result):
    success: Literal[True] = True
    message: str = "Senha redefinida com sucesso. Você pode fazer login com sua nova senha."


class AuthFailure(_Result):
    success: Literal[False] = False
    error: AuthError

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self.error]

    def to_response(self) -> dict[str, Any]:
        return {"success": False, "error": self.message}


AuthResult = LoginSuccess | AuthFailure
VerifyResult = VerifySuccess | AuthFailure
RefreshResult = RefreshSuccess | AuthFailure
PasswordResetRequestResult = PasswordResetRequested | AuthFailure
PasswordResetResult = PasswordResetSuccess | AuthFailure
