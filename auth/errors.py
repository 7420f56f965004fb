"""
auth/errors.py -- Exception taxonomy for the auth layer.

Every failure the session subsystem can report is an AuthError subclass with
a stable machine-readable `code`. The auth layer raises these; the HTTP layer
(api/main.py) maps them to status codes. Several codes collapse to the same
status at the boundary (all token problems become 401) but stay distinct
here so logs show what actually happened.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base exception for the session subsystem."""

    code: str = "auth_error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Credential errors
# ---------------------------------------------------------------------------


class InvalidInput(AuthError):
    """Malformed input."""

    code = "validation_error"

    def __init__(self, message: str = "", field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class DuplicateEmail(AuthError):
    """Email already registered."""

    code = "duplicate_email"


class WeakPassword(AuthError):
    """Password does not meet the password policy."""

    code = "weak_password"


class BadCredentials(AuthError):
    """Invalid email or password."""

    code = "bad_credentials"


class AccountInactive(AuthError):
    """Account is deactivated."""

    code = "account_inactive"


class UserNotFound(AuthError):
    """User not found."""

    code = "not_found"


class PermissionDenied(AuthError):
    """Operation not permitted."""

    code = "forbidden"


# ---------------------------------------------------------------------------
# Access token errors
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    """Access token rejected."""

    code = "token_invalid"


class TokenExpired(TokenError):
    """Access token has expired."""

    code = "token_expired"


class TokenMalformed(TokenError):
    """Access token structure or signature is invalid."""

    code = "token_malformed"


class WrongKey(TokenError):
    """Access token was signed with an unexpected algorithm."""

    code = "token_wrong_key"


# ---------------------------------------------------------------------------
# Refresh token errors
# ---------------------------------------------------------------------------


class RefreshTokenError(AuthError):
    """Refresh token rejected."""

    code = "refresh_token_invalid"


class RefreshTokenNotFound(RefreshTokenError):
    """Refresh token is unknown."""

    code = "refresh_token_not_found"


class RefreshTokenExpired(RefreshTokenError):
    """Refresh token has expired."""

    code = "refresh_token_expired"


class ReplayDetected(RefreshTokenError):
    """Refresh token was already used or revoked."""

    code = "refresh_token_replayed"
