"""
auth/errors.py -- Typed failures raised by the auth services.

Invalid, expired, and unknown credentials are NOT exceptions: the services
return None so that every such case looks the same to the caller (and so to
an attacker probing for valid accounts). Exceptions are reserved for
conditions the caller must treat differently.

The API layer maps each class to a status code in api/main.py.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ValidationError(AuthError):
    """Request input failed validation."""

    code = "validation_error"
    status_code = 400

    def __init__(self, message: str = "", details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class EmailTakenError(AuthError):
    """An account with that email already exists."""

    code = "email_taken"
    status_code = 409


class RateLimitedError(AuthError):
    """Too many requests."""

    code = "rate_limited"
    status_code = 429


class TokenReuseDetected(AuthError):
    """A rotated refresh token was presented again.

    Raised only after every active session of the owner has been revoked and
    the event has been audited. The caller must force re-authentication.
    """

    code = "TOKEN_REUSE_DETECTED"
    status_code = 401

    def __init__(self, user_id: int, token_id: str) -> None:
        super().__init__("Token reuse detected. Please log in again.")
        self.user_id = user_id
        self.token_id = token_id


class DependencyFailure(AuthError):
    """A backing store or the mail provider failed."""

    code = "service_unavailable"
    status_code = 503
