from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from lettera.api.schemas import (
    AuthResponse,
    MeResponse,
    MessageResponse,
    PresencePingRequest,
    PresenceResponse,
    ProfileUpdateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    RegistrationResponse,
    ResendVerificationRequest,
    TokenPairResponse,
    UserResponse,
    VerifyEmailRequest,
)
from lettera.logging import email_fingerprint
from lettera.service.errors import RateLimitedError
from lettera.service.runtime import check_rate_limit, get_runtime
from lettera.storage.ephemeral import rate_limit_key
from lettera.storage.models import User

router = APIRouter(prefix="/auth", tags=["auth"])
presence_router = APIRouter(prefix="/presence", tags=["presence"])


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def _enforce_rate_limit(runtime, scope: str, email: str, limit: int) -> None:
    """Raise 429 once ``email`` exceeds ``limit`` calls to ``scope`` in the window."""
    window = runtime.settings.verify_rate_limit_window_seconds
    allowed, _remaining = await check_rate_limit(
        runtime,
        rate_limit_key(scope, email_fingerprint(email)),
        limit,
        window,
        return_remaining=True,
    )
    if not allowed:
        raise RateLimitedError(detail={"retryAfterSeconds": window})


@router.post("/register", response_model=RegistrationResponse, status_code=201)
async def register(body: RegisterRequest):
    """Create an unverified account and email it a verification code.

    Raises:
        400: Invalid fields or a weak password (every violated rule is listed)
        409: The email is already registered
        502: The verification email could not be sent; resend is available
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, body.first_name, body.last_name
    )
    return RegistrationResponse(
        success=result.success, message=result.message, email=result.email
    )


@router.post("/verify-email", response_model=AuthResponse)
async def verify_email(body: VerifyEmailRequest):
    """Consume the emailed code, mark the account verified and issue tokens."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "verify", body.email, runtime.settings.verify_rate_limit_per_window
    )
    result = await runtime.auth.verify_email(body.email, body.verification_code)
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        user=UserResponse.from_user(result.user),
    )


@router.post("/refresh-token", response_model=TokenPairResponse)
async def refresh_token(body: RefreshTokenRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return TokenPairResponse(
        access_token=pair.access_token, refresh_token=pair.refresh_token
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(user: User = Depends(get_user)):
    """Revoke every refresh token of the caller.

    The presented access token stays valid until it expires.
    """
    runtime = get_runtime()
    await runtime.auth.logout(user.id)
    return MessageResponse(success=True, message="Logged out successfully")


@router.get("/me", response_model=MeResponse)
async def me(user: User = Depends(get_user)):
    return MeResponse(user=UserResponse.from_user(user))


@router.patch("/me", response_model=MeResponse)
async def update_me(body: ProfileUpdateRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.update_profile(
        user.id, body.model_dump(exclude_unset=True)
    )
    return MeResponse(user=UserResponse.from_user(updated))


@router.post("/resend-verification", response_model=MessageResponse)
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "resend", body.email, runtime.settings.resend_rate_limit_per_window
    )
    result = await runtime.auth.resend_verification(body.email)
    return MessageResponse(success=result.success, message=result.message)


@presence_router.post("/ping", response_model=PresenceResponse)
async def presence_ping(
    body: Optional[PresencePingRequest] = None, user: User = Depends(get_user)
):
    """Mark the caller online (or away) for the presence TTL."""
    runtime = get_runtime()
    status = await runtime.presence.ping(user.id, body.status if body else "online")
    return PresenceResponse(user_id=user.id, status=status)


@presence_router.get("/{user_id}", response_model=PresenceResponse)
async def presence_status(user_id: str, user: User = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.presence.get_status(user_id)
    return PresenceResponse(user_id=user_id, status=status)
