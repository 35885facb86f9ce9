"""
auth/errors.py -- Exception taxonomy for authentication and sessions.

Every AuthError carries the HTTP status and machine-readable code the API
layer renders, so api/main.py needs one exception handler for the whole
family. Messages are fixed per class: callers never learn which sub-cause
(unknown email vs. wrong password, missing vs. expired session) applied.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base authentication error."""

    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class DuplicateAccount(AuthError):
    """An account with this email already exists."""

    status_code = 409
    code = "duplicate_account"
    message = "An account with this email already exists."


class InvalidCredentials(AuthError):
    """Unknown email, password-less account, or wrong password."""

    status_code = 401
    code = "invalid_credentials"
    message = "Invalid email or password."


class Unauthorized(AuthError):
    """Missing, unknown, inactive, or expired session."""

    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class InvalidOrExpiredToken(AuthError):
    """Reset token is unknown, already used, or past its expiry."""

    status_code = 400
    code = "invalid_or_expired_token"
    message = "Invalid or expired reset token."


class AccessDenied(AuthError):
    """Authenticated, but the account lacks the required capability."""

    status_code = 403
    code = "access_denied"
    message = "You do not have access to this resource."


class DataIntegrityError(RuntimeError):
    """A stored record references an owner that does not exist.

    Not an AuthError: this is an infrastructure fault and surfaces as a
    generic 500, never as "not found".
    """
