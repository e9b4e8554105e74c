from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from userservice.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    ResendVerificationRequest,
    TokenRefreshRequest,
    TokenValidationResponse,
    UserResponse,
)
from userservice.logging import get_logger
from userservice.service.auth import AuthBundle, AuthContext
from userservice.service.runtime import get_runtime
from userservice.storage.models import UserSummary

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the Bearer access token; failures surface as 401 envelopes."""
    return get_runtime().auth.authenticate(authorization)


def _auth_response(bundle: AuthBundle) -> AuthResponse:
    return AuthResponse(
        access_token=bundle.access_token,
        refresh_token=bundle.refresh_token,
        token_type=bundle.token_type,
        expires_in=bundle.expires_in,
        user=UserResponse.from_summary(bundle.user),
    )


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=text))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a new account and sign it in.

    A verification link is sent to the new address. The account can log in
    before the email is verified.

    Raises:
        403: If signup is disabled in settings
        409: If the email or username is already registered
    """
    runtime = get_runtime()
    bundle = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return Envelope(status="ok", data=_auth_response(bundle))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Every successful login replaces the account's refresh tokens with a
    single new one.

    Raises:
        401: If credentials are invalid, or ``account_locked`` after too many failures
        403: If the account is not active
    """
    runtime = get_runtime()
    bundle = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(bundle))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    bundle = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(bundle))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.email)
    return _message("Logged out successfully")


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate_token(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=TokenValidationResponse(
            email=principal.email,
            roles=list(principal.roles),
            expires_at=principal.expires_at,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.email)
    return Envelope(
        status="ok", data=UserResponse.from_summary(UserSummary.from_user(user))
    )


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email_link(token: str = Query(..., min_length=1, max_length=256)):
    """Target of the link embedded in verification emails."""
    runtime = get_runtime()
    await runtime.auth.verify_email(token)
    return _message("Email verified successfully")


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    await runtime.auth.verify_email(body.token)
    return _message("Email verified successfully")


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return _message("Verification email sent")


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    # Same answer for unknown addresses to prevent email enumeration
    return Envelope(status="ok", data={"status": "sent"})


@router.get("/auth/reset-password/verify", response_model=Envelope, tags=["auth"])
async def verify_reset_token(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    await runtime.auth.verify_reset_token(token)
    return Envelope(status="ok", data={"valid": True})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_principal),
):
    """Change the current user's password.

    Requires the current password. All refresh tokens of the account are
    revoked, so other devices must log in again once their access token
    expires.
    """
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.email, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed"})
