from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from chronos.api.error_handling import error_response
from chronos.api.schemas import (
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    SessionResponse,
    SessionsRevokedResponse,
    TwoFactorEnableRequest,
    TwoFactorEnableResponse,
    TwoFactorRequiredResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
    UserResponse,
)
from chronos.logging import get_logger
from chronos.service.auth import AccountProfile, AuthContext
from chronos.service.devices import request_info
from chronos.service.errors import (
    InvalidTwoFactorToken,
    OAuthExchangeFailed,
    RateLimited,
    ServiceError,
    TwoFactorRequired,
)
from chronos.service.oauth import GOOGLE
from chronos.service.runtime import check_rate_limit, get_runtime
from chronos.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _access_token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    settings = get_runtime().settings
    return request.cookies.get(settings.access_token_cookie) or _bearer_token(authorization)


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Resolve the caller from the access-token cookie or a Bearer header."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(_access_token_from(request, authorization))


def _client(request: Request):
    return request_info(
        request.headers,
        request.client.host if request.client else None,
        get_runtime().settings.trusted_proxies,
    )


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count one attempt against ``key`` and raise 429 once the window is spent.

    Keys name the action and the subject, e.g. ``login:ip:203.0.113.4``.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        get_runtime(), key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None and limit > 0:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", action=key.split(":", 1)[0], retry_after=reset_seconds)
        raise RateLimited(detail={"retry_after": reset_seconds})
    return info


async def _limit_auth_attempt(key: str, response: Optional[Response] = None) -> RateLimitInfo:
    settings = get_runtime().settings
    return await _enforce_rate_limit(
        key,
        settings.auth_rate_limit,
        settings.auth_rate_limit_window_seconds,
        response=response,
    )


def _apply_token_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    # the SPA reads the access token; the refresh token stays httpOnly
    response.set_cookie(
        settings.access_token_cookie,
        tokens.access_token,
        httponly=False,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        settings.refresh_token_cookie,
        tokens.refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_token_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (settings.access_token_cookie, settings.refresh_token_cookie):
        response.delete_cookie(
            name, path="/", secure=settings.is_production, samesite="lax"
        )


def _user_payload(profile: AccountProfile) -> UserResponse:
    user = profile.user
    return UserResponse(
        id=user.id,
        login=user.login,
        email=user.email,
        full_name=user.full_name,
        avatar=user.avatar,
        created=user.created_at,
        google_id=GOOGLE in profile.linked_providers,
        is_email_verified=user.email_verified,
        twoFactorEnabled=profile.two_factor_enabled,
        lastLoginAt=user.last_login_at,
    )


def _service_error_response(exc: ServiceError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)


@router.post("/registration", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a local account. The email starts unverified."""
    runtime = get_runtime()
    ip_addr, _device = _client(request)
    await _limit_auth_attempt(f"register:ip:{ip_addr or 'unknown'}", response)
    user = await runtime.auth.register(body.login, body.email, body.password)
    profile = await runtime.auth.profile(user.id)
    return Envelope(
        status="ok",
        data={"message": "User registered successfully", "user": _user_payload(profile)},
    )


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login.

    When the account has 2FA enabled and no ``token`` was sent the response is
    a 200 carrying ``requires2FA`` so the client can prompt for the code; no
    session or cookie is created in that case.

    Attempts are counted per client address and per account.
    """
    runtime = get_runtime()
    ip_addr, device = _client(request)
    await _limit_auth_attempt(f"login:ip:{ip_addr or 'unknown'}", response)
    await _limit_auth_attempt(f"login:account:{body.login.strip().lower()}", response)
    try:
        user, _session, tokens = await runtime.auth.login(
            body.login, body.password, body.token, ip_addr=ip_addr, device=device
        )
    except TwoFactorRequired as exc:
        return Envelope(status="ok", data=TwoFactorRequiredResponse(message=exc.message))
    _apply_token_cookies(response, tokens)
    profile = await runtime.auth.profile(user.id)
    return Envelope(
        status="ok", data={"message": "Login successful", "user": _user_payload(profile)}
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(request: Request, response: Response):
    """Rotate the refresh-token cookie. Any failure clears both cookies."""
    runtime = get_runtime()
    try:
        _session, tokens = await runtime.auth.refresh(
            request.cookies.get(runtime.settings.refresh_token_cookie)
        )
    except ServiceError as exc:
        logger.warning("refresh_failed", error_code=exc.error_code)
        failed = _service_error_response(exc)
        _clear_token_cookies(failed)
        return failed
    _apply_token_cookies(response, tokens)
    return Envelope(status="ok", data=MessageResponse(message="Tokens refreshed"))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    """End the current device's session only."""
    runtime = get_runtime()
    await runtime.auth.logout(_access_token_from(request, authorization))
    _clear_token_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_current_user)):
    profile = await get_runtime().auth.profile(principal.user_id)
    return Envelope(status="ok", data=_user_payload(profile))


@router.get("/sessions", response_model=Envelope)
async def list_sessions(principal: AuthContext = Depends(get_current_user)):
    """Devices signed in to this account; ``current`` marks the caller's own."""
    sessions = await get_runtime().auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=session.id,
                ipAddress=session.ip_addr,
                deviceType=session.device.type,
                deviceTitle=session.device.title,
                createdAt=session.created_at,
                expiresAt=session.expires_at,
                current=session.id == principal.session_id,
            )
            for session in sessions
        ],
    )


@router.post("/sessions/revoke-others", response_model=Envelope)
async def revoke_other_sessions(principal: AuthContext = Depends(get_current_user)):
    revoked = await get_runtime().auth.revoke_other_sessions(principal)
    return Envelope(
        status="ok",
        data=SessionsRevokedResponse(message="Other devices signed out", revoked=revoked),
    )


@router.get("/google")
async def google_start():
    """Redirect to Google's consent screen, remembering the CSRF state in a cookie."""
    runtime = get_runtime()
    url, state = runtime.auth.start_oauth()
    redirect = RedirectResponse(url, status_code=302)
    redirect.set_cookie(
        runtime.settings.oauth_state_cookie,
        state,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
        max_age=runtime.settings.oauth_state_ttl_minutes * 60,
        path="/",
    )
    return redirect


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the Google login and send the browser to the profile page."""
    runtime = get_runtime()
    settings = runtime.settings
    ip_addr, device = _client(request)
    await _limit_auth_attempt(f"oauth:callback:{ip_addr or 'unknown'}")
    try:
        if error:
            logger.warning("oauth_provider_error", provider=GOOGLE, error=error)
            raise OAuthExchangeFailed("Google sign-in was cancelled")
        _user, _session, tokens = await runtime.auth.oauth_login(
            code,
            state,
            request.cookies.get(settings.oauth_state_cookie),
            ip_addr=ip_addr,
            device=device,
        )
    except ServiceError as exc:
        failed = _service_error_response(exc)
        failed.delete_cookie(settings.oauth_state_cookie, path="/")
        return failed

    redirect = RedirectResponse(f"{settings.frontend_url.rstrip('/')}/profile", status_code=302)
    _apply_token_cookies(redirect, tokens)
    redirect.delete_cookie(settings.oauth_state_cookie, path="/")
    return redirect


@router.post("/2fa/setup", response_model=Envelope)
async def two_factor_setup(
    body: PasswordConfirmRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    await _limit_auth_attempt(f"2fa:{principal.user_id}", response)
    setup = await get_runtime().auth.setup_two_factor(principal.user_id, body.password)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret, qrCode=setup.qr_code, manualEntryKey=setup.secret
        ),
    )


@router.post("/2fa/enable", response_model=Envelope)
async def two_factor_enable(
    body: TwoFactorEnableRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    await _limit_auth_attempt(f"2fa:{principal.user_id}", response)
    codes = await get_runtime().auth.enable_two_factor(
        principal.user_id, body.token, body.password
    )
    return Envelope(
        status="ok",
        data=TwoFactorEnableResponse(message="2FA enabled successfully", backupCodes=codes),
    )


@router.post("/2fa/disable", response_model=Envelope)
async def two_factor_disable(
    body: PasswordConfirmRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    """Turn 2FA off. Every other device signed in to the account is signed out."""
    await _limit_auth_attempt(f"2fa:{principal.user_id}", response)
    await get_runtime().auth.disable_two_factor(principal, body.password)
    return Envelope(status="ok", data=MessageResponse(message="2FA disabled successfully"))


@router.post("/2fa/verify", response_model=Envelope)
async def two_factor_verify(
    body: TwoFactorVerifyRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    """Check a TOTP or backup code for the signed-in user. Backup codes are consumed."""
    await _limit_auth_attempt(f"2fa:{principal.user_id}", response)
    if not await get_runtime().auth.verify_two_factor(principal.user_id, body.token):
        raise InvalidTwoFactorToken(detail={"valid": False})
    return Envelope(status="ok", data=TwoFactorVerifyResponse(valid=True))


@router.get("/2fa/status", response_model=Envelope)
async def two_factor_status(principal: AuthContext = Depends(get_current_user)):
    status = await get_runtime().auth.two_factor_status(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            configured=status.configured,
            remainingBackupCodes=status.remaining_backup_codes,
        ),
    )


@router.post("/password-reset", response_model=Envelope)
async def password_reset_request(
    body: PasswordResetRequest, request: Request, response: Response
):
    """Email a reset code. The answer is the same whether or not the account exists."""
    runtime = get_runtime()
    settings = runtime.settings
    ip_addr, _device = _client(request)
    for key in (f"reset:ip:{ip_addr or 'unknown'}", f"reset:email:{body.email.lower()}"):
        await _enforce_rate_limit(
            key,
            settings.password_reset_rate_limit,
            settings.password_reset_rate_limit_window_seconds,
            response=response,
        )
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="If the email is registered, a reset code has been sent"),
    )


@router.post("/password-reset/{code}", response_model=Envelope)
async def password_reset_confirm(
    body: PasswordResetConfirm,
    request: Request,
    response: Response,
    code: str = Path(..., pattern=r"^[0-9]{6}$"),
):
    ip_addr, _device = _client(request)
    await _limit_auth_attempt(f"reset:confirm:{ip_addr or 'unknown'}", response)
    await get_runtime().auth.reset_password(code, body.password)
    _clear_token_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="Password has been reset"))
