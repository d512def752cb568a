from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)

    Auth failures refine these with more specific codes (``token_expired``,
    ``invalid_2fa_token``, ...) so clients can tell a stale session apart from
    a wrong password without parsing messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Credentials and tokens


class InvalidCredentials(AuthenticationError):
    """Unknown login or wrong password; the two cases are indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid username or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    """Malformed token, bad signature, unexpected algorithm or token type."""
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenMissing(AuthenticationError):
    error_code = "refresh_token_missing"

    def __init__(self, message: str = "Refresh token is missing", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenInvalid(AuthenticationError):
    """The refresh token is not bound to any live session (reused or revoked)."""
    error_code = "refresh_token_invalid"

    def __init__(self, message: str = "Refresh token is not valid", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Two-factor


class TwoFactorRequired(ServiceError):
    """Soft signal: password was correct but a second factor must be supplied.

    Rendered as a successful response carrying ``requires2FA`` rather than an
    error envelope; no session exists at that point.
    """
    status_code = 200
    error_code = "two_factor_required"

    def __init__(self, message: str = "Two-factor token required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorToken(AuthenticationError):
    error_code = "invalid_2fa_token"

    def __init__(self, message: str = "Invalid 2FA token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorNotConfigured(ValidationError):
    error_code = "2fa_not_configured"

    def __init__(self, message: str = "2FA not set up", **kwargs) -> None:
        super().__init__(message, **kwargs)


# OAuth


class InvalidOAuthState(ValidationError):
    error_code = "invalid_oauth_state"

    def __init__(self, message: str = "Invalid OAuth state", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ReplayedAuthorizationCode(ValidationError):
    error_code = "authorization_code_replayed"

    def __init__(
        self, message: str = "Authorization code has already been used", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class UnverifiedEmail(ValidationError):
    error_code = "email_not_verified"

    def __init__(
        self, message: str = "Email is not verified by the identity provider", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class OAuthExchangeFailed(ValidationError):
    error_code = "oauth_exchange_failed"

    def __init__(self, message: str = "OAuth code exchange failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Accounts


class AccountNotFound(NotFoundError):
    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidResetCode(ValidationError):
    error_code = "invalid_reset_code"

    def __init__(
        self, message: str = "Reset code is invalid or has expired", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


# Throttling


class RateLimited(ServiceError):
    """Too many attempts from one client or against one account (429).

    ``detail["retry_after"]`` holds the seconds until the window resets.
    """

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many attempts, try again later", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentials",
    "TokenInvalid",
    "TokenExpired",
    "RefreshTokenMissing",
    "RefreshTokenInvalid",
    "TwoFactorRequired",
    "InvalidTwoFactorToken",
    "TwoFactorNotConfigured",
    "InvalidOAuthState",
    "ReplayedAuthorizationCode",
    "UnverifiedEmail",
    "OAuthExchangeFailed",
    "AccountNotFound",
    "InvalidResetCode",
    "RateLimited",
]
