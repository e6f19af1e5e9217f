from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Expected failure of a lifecycle transition.

    ``status_code`` and ``error_code`` are what the HTTP envelope reports.
    ``detail`` is internal context for logs; its ``reason`` entry becomes
    the outcome's detail and is never sent to clients.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials missing or wrong. Unknown account and bad password look alike."""

    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A presented token cannot be redeemed."""


class InvalidTokenError(TokenError):
    """Unknown, already consumed, malformed, or not signed by us."""

    error_code = "invalid_token"


class ExpiredTokenError(TokenError):
    error_code = "expired_token"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username or email already belongs to another account."""

    status_code = 409
    error_code = "conflict"


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "ExpiredTokenError",
    "InvalidTokenError",
    "NotFoundError",
    "ServiceError",
    "TokenError",
    "ValidationError",
]
