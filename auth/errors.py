"""
auth/errors.py -- Exceptions raised by the authentication core.

Security-relevant failures are normalized here, before they leave auth/:
every TokenInvalid carries the same code and message whether the link was
malformed, unknown, expired, or carried the wrong verifier. Callers cannot
leak the difference by accident because they never receive it.

Validation failures (password too short, confirmation mismatch) are not
security-sensitive and carry the specific reason for display.

Bad login credentials are not an exception: authenticate_user() returns None
and the route answers with one generic message.
"""

from __future__ import annotations

TOKEN_INVALID_MESSAGE = "Invalid or expired password reset link"


class AuthError(Exception):
    """Base class. code is machine-readable, message is safe to show users."""

    code = "auth_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TokenInvalid(AuthError):
    """The reset link cannot be used. Always the same message."""

    code = "token_invalid"
    status_code = 400

    def __init__(self) -> None:
        super().__init__(TOKEN_INVALID_MESSAGE)


class PasswordValidationError(AuthError):
    """The new password was rejected for a reason the user can fix."""

    code = "validation_error"
    status_code = 422
