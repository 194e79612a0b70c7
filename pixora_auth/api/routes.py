from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from pixora_auth.api.schemas import (
    AuthResponse,
    EmailRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupRequest,
    TwoFactorSetupResponse,
    UpdateUserRoleRequest,
    UpdateUserStatusRequest,
    UserListResponse,
)
from pixora_auth.logging import get_logger
from pixora_auth.service.auth import AuthContext, RequestContext, SessionManager
from pixora_auth.service.runtime import check_rate_limit, get_runtime
from pixora_auth.service.tokens import TokenPair
from pixora_auth.storage.models import safe_account_view, safe_session_view

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "success": False,
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Reject with 429 once ``key`` exceeds ``limit`` hits in the window.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.info("rate_limited", scope=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later",
            status_code=429,
            headers={"Retry-After": str(window_seconds)},
        )


def _client_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_addr=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _token_response(auth: SessionManager, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=int(auth.tokens.access_ttl.total_seconds()),
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
        session_id=pair.session_id,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    SessionManager.require_role(ctx, "admin")
    return ctx


async def get_super_admin(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    SessionManager.require_role(ctx, "super_admin")
    return ctx


# -- public auth endpoints ---------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an unverified account and email a verification link.

    Raises:
        409: If an account with this email already exists
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_key(request)}",
        runtime.settings.register_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        profile=body.profile,
        context=_client_context(request),
    )
    return Envelope(
        success=True,
        data={"user": safe_account_view(result.account)},
        message="Registration successful. Please check your email to verify your account.",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Accounts with two-factor enabled must also send ``two_factor_code``;
    without it the response only reports that a code is required.

    Raises:
        401: If credentials or the two-factor code are invalid
        403: If the account is deactivated
        423: If the account is locked after repeated failures
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_key(request)}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.two_factor_code,
        body.remember_me,
        context=_client_context(request),
    )
    if result.two_factor_required:
        return Envelope(
            success=True,
            data=AuthResponse(two_factor_required=True),
            message="Two-factor authentication code required",
        )
    return Envelope(
        success=True,
        data=AuthResponse(
            user=safe_account_view(result.account),
            tokens=_token_response(runtime.auth, result.tokens),
        ),
        message="Login successful",
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token into a new token pair for the same session.

    Raises:
        401: If the token is invalid, expired, revoked, or already rotated
        503: If the revocation store is unreachable
    """
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, context=_client_context(request))
    return Envelope(
        success=True,
        data=AuthResponse(
            user=safe_account_view(result.account),
            tokens=_token_response(runtime.auth, result.tokens),
        ),
        message="Token refreshed",
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: Optional[LogoutRequest] = None):
    """End the session behind a refresh token; always reports success."""
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token if body else None)
    return Envelope(success=True, message="Logged out successfully")


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    """Email a password reset link if the account exists.

    The response is identical whether or not the email is registered.

    Raises:
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    message = await runtime.auth.forgot_password(body.email)
    return Envelope(success=True, message=message)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    """Set a new password with a reset token and sign out every session.

    Raises:
        400: If the token is invalid, expired, or already used
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_key(request)}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(
        success=True,
        message="Password has been reset successfully. Please log in with your new password.",
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    """Mark the account's email verified.

    Raises:
        400: If the token is invalid, expired, or already used
    """
    runtime = get_runtime()
    account = await runtime.auth.verify_email(body.token)
    return Envelope(
        success=True,
        data={"user": safe_account_view(account)},
        message="Email verified successfully",
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    """Send a fresh verification link to an unverified account.

    Raises:
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    message = await runtime.auth.resend_verification(body.email)
    return Envelope(success=True, message=message)


# -- authenticated endpoints ------------------------------------------------


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = await runtime.auth.get_current_account(principal.user_id)
    return Envelope(success=True, data={"user": safe_account_view(account)})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    """Sign out every session of the current account, this one included."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    return Envelope(
        success=True,
        data={"sessions_revoked": revoked},
        message="Logged out from all devices",
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
):
    """Change the current user's password.

    Requires the current password. Every other session is signed out.

    Raises:
        401: If the current password is incorrect
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user_id}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return Envelope(
        success=True,
        data={"sessions_revoked": revoked},
        message="Password changed successfully",
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        success=True,
        data={"items": [safe_session_view(s, principal.session_id) for s in sessions]},
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Sign out one of the current user's sessions.

    Raises:
        404: If the session does not exist or belongs to another user
    """
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(success=True, message="Session revoked")


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def setup_two_factor(
    body: TwoFactorSetupRequest,
    principal: AuthContext = Depends(get_user),
):
    """Start two-factor enrolment; returns the shared secret and backup codes once.

    Raises:
        401: If the password is incorrect
        409: If two-factor authentication is already enabled
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:setup:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    setup = await runtime.auth.setup_two_factor(principal.user_id, body.password)
    return Envelope(
        success=True,
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            otpauth_url=setup.otpauth_url,
            backup_codes=setup.backup_codes,
        ),
        message="Scan the QR code with your authenticator app, then verify a code",
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorCodeRequest,
    principal: AuthContext = Depends(get_user),
):
    """Confirm enrolment with a current code and turn two-factor on.

    Raises:
        400: If setup was never started
        401: If the code is invalid
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_window,
        runtime.settings.rate_limit_window_seconds,
    )
    account = await runtime.auth.verify_two_factor(principal.user_id, body.code)
    return Envelope(
        success=True,
        data={"user": safe_account_view(account)},
        message="Two-factor authentication enabled",
    )


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(principal: AuthContext = Depends(get_user)):
    """Turn two-factor off and discard the secret and backup codes.

    Raises:
        400: If two-factor authentication is not enabled
    """
    runtime = get_runtime()
    account = await runtime.auth.disable_two_factor(principal.user_id)
    return Envelope(
        success=True,
        data={"user": safe_account_view(account)},
        message="Two-factor authentication disabled",
    )


# -- administration ---------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[str] = Query(None, max_length=32),
    is_active: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200, description="Maximum users to return"),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_admin_user),
):
    """List accounts, optionally filtered by role and status.

    Raises:
        403: If the caller is not an admin
    """
    runtime = get_runtime()
    accounts = await runtime.auth.list_accounts(
        role=role, is_active=is_active, limit=limit, offset=offset
    )
    return Envelope(
        success=True,
        data=UserListResponse(
            items=[safe_account_view(a) for a in accounts], limit=limit, offset=offset
        ),
    )


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_super_admin),
):
    """Change an account's role.

    Raises:
        403: If the caller is not a super admin or targets their own account
        404: If the account does not exist
    """
    runtime = get_runtime()
    account = await runtime.auth.set_role(principal, user_id, body.role)
    return Envelope(success=True, data={"user": safe_account_view(account)})


@router.patch("/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: UpdateUserStatusRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    """Activate or deactivate an account; deactivation signs out every session.

    Raises:
        403: If the caller is not an admin or outranked by the target
        404: If the account does not exist
    """
    runtime = get_runtime()
    account = await runtime.auth.set_active(principal, user_id, body.is_active)
    return Envelope(success=True, data={"user": safe_account_view(account)})
