"""Auth: register, login, refresh, logout, me, forgot / reset password."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.api.deps import (
    auth_http_error,
    get_auth_service,
    get_bearer_token,
    get_client_ip,
    get_current_user,
    get_rate_limiter,
    rate_limited,
    rate_limited_per_user,
)
from app.core.auth import validate_password_strength
from app.core.rate_limit import (
    POLICY_API_READ,
    POLICY_FORGOT_PASSWORD,
    POLICY_LOGIN,
    POLICY_PASSWORD_RESET,
    POLICY_SIGNUP,
    RateLimiter,
)
from app.schemas.auth import (
    AuthError,
    AuthFailure,
    LoginSuccess,
    PasswordResetRequested,
    PasswordResetSuccess,
    RefreshSuccess,
    UserOut,
    VerifySuccess,
)
from app.services.auth_service import AuthService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterBody(BaseModel):
    email: str
    password: str
    name: str = ""


class LoginBody(BaseModel):
    email: str
    password: str


class RefreshBody(BaseModel):
    refresh_token: str


class LogoutBody(BaseModel):
    refresh_token: str | None = None


class ForgotPasswordBody(BaseModel):
    email: str


class ResetPasswordBody(BaseModel):
    token: str
    password: str
    confirm_password: str


@router.post(
    "/register",
    response_model=LoginSuccess,
    summary="Register a new user",
    dependencies=[Depends(rate_limited(POLICY_SIGNUP))],
    responses={
        400: {"description": "Missing fields, weak password or email already registered"},
        429: {"description": "Too many sign-ups from this IP"},
        500: {"description": "Registration failed"},
    },
)
async def register(
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
    body: RegisterBody,
) -> LoginSuccess:
    email = (body.email or "").strip().lower()
    password = body.password or ""
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email e senha são obrigatórios")
    weaknesses = validate_password_strength(password)
    if weaknesses:
        raise HTTPException(status_code=400, detail={"error": "Senha fraca", "details": weaknesses})
    result = await service.register_user(
        email,
        password,
        body.name,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if isinstance(result, AuthFailure):
        raise auth_http_error(result)
    return result


@router.post(
    "/login",
    response_model=LoginSuccess,
    summary="Login with email and password",
    dependencies=[Depends(rate_limited(POLICY_LOGIN))],
    responses={
        401: {"description": "Invalid email or password"},
        403: {"description": "Account disabled"},
        429: {"description": "Too many login attempts from this IP"},
    },
)
async def login(
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    body: LoginBody,
) -> LoginSuccess:
    ip_address = get_client_ip(request)
    if not (body.email or "").strip() or not body.password:
        raise HTTPException(status_code=401, detail="Email e senha são obrigatórios")
    result = await service.authenticate_user(
        body.email,
        body.password,
        ip_address=ip_address,
        user_agent=request.headers.get("User-Agent"),
    )
    if isinstance(result, AuthFailure):
        raise auth_http_error(result)
    await limiter.reset(POLICY_LOGIN, ip_address)
    logger.info("Successful login for user %s from %s", result.user.id, ip_address)
    return result


@router.post(
    "/refresh",
    response_model=RefreshSuccess,
    summary="Exchange refresh token for new access and refresh tokens",
    responses={
        401: {"description": "Refresh token invalid, expired or revoked"},
    },
)
async def refresh_tokens(
    service: Annotated[AuthService, Depends(get_auth_service)],
    body: RefreshBody,
) -> RefreshSuccess:
    """Exchange refresh_token for new access_token and refresh_token (rotation)."""
    result = await service.refresh_access_token(body.refresh_token)
    if isinstance(result, AuthFailure):
        raise auth_http_error(result)
    return result


@router.post(
    "/logout",
    summary="Revoke the refresh token and drop cached session state",
)
async def logout(
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
    body: LogoutBody | None = None,
) -> dict:
    access_token = get_bearer_token(request)
    user: UserOut | None = None
    if access_token:
        verified = await service.verify_access_token(access_token)
        if isinstance(verified, VerifySuccess):
            user = verified.user
    await service.logout_user(
        refresh_token=body.refresh_token if body else None,
        user_id=user.id if user else None,
        access_token=access_token,
        email=user.email if user else None,
    )
    if user:
        logger.info("User logout: %s from %s", user.id, get_client_ip(request))
    return {"success": True, "message": "Logout realizado com sucesso"}


@router.get(
    "/me",
    response_model=UserOut,
    summary="Get current authenticated user",
    dependencies=[Depends(rate_limited_per_user(POLICY_API_READ))],
    responses={
        401: {"description": "Not authenticated or invalid token"},
    },
)
async def me(user: Annotated[UserOut, Depends(get_current_user)]) -> UserOut:
    return user


@router.post(
    "/forgot-password",
    response_model=PasswordResetRequested,
    summary="Request a password reset email",
    dependencies=[Depends(rate_limited(POLICY_FORGOT_PASSWORD))],
    responses={
        400: {"description": "Email missing"},
        429: {"description": "Too many reset requests from this IP"},
    },
)
async def forgot_password(
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
    body: ForgotPasswordBody,
) -> PasswordResetRequested:
    """Always answers the same way for known and unknown emails."""
    if not (body.email or "").strip():
        raise HTTPException(status_code=400, detail="Email é obrigatório")
    result = await service.request_password_reset(
        body.email,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if isinstance(result, AuthFailure):
        raise auth_http_error(result)
    return result


@router.post(
    "/reset-password",
    response_model=PasswordResetSuccess,
    summary="Set a new password with a reset token",
    dependencies=[Depends(rate_limited(POLICY_PASSWORD_RESET))],
    responses={
        400: {"description": "Token invalid or expired, passwords differ, weak password or inactive user"},
        429: {"description": "Too many reset attempts from this IP"},
    },
)
async def reset_password(
    request: Request,
    service: Annotated[AuthService, Depends(get_auth_service)],
    body: ResetPasswordBody,
) -> PasswordResetSuccess:
    if not body.token or not body.password or not body.confirm_password:
        raise HTTPException(status_code=400, detail="Token e senhas são obrigatórios")
    if body.password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Senhas não coincidem")
    weaknesses = validate_password_strength(body.password)
    if weaknesses:
        raise HTTPException(status_code=400, detail={"error": "Senha fraca", "details": weaknesses})
    result = await service.reset_password(
        body.token,
        body.password,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if isinstance(result, AuthFailure):
        # Every refusal here is a bad request; only a server fault is 500
        status_code = 500 if result.error is AuthError.INTERNAL_ERROR else 400
        raise HTTPException(status_code=status_code, detail=result.message)
    return result
