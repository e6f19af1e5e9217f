from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from accountcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    NOT_AUTHORIZED = "not_authorized"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Outcome:
    """Result of one lifecycle transition.

    ``reason`` is safe to show the caller. ``detail`` is an internal reason
    code kept for logs and monitoring and never serialized; it is what
    tells "unknown account" from "wrong password", or "no such token" from
    "expired token", when the external answer is deliberately the same.
    ``email_delivered`` is None when the transition sent no email.
    """

    kind: OutcomeKind
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    detail: Optional[str] = None
    email_delivered: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(
        cls,
        payload: Optional[Dict[str, Any]] = None,
        *,
        email_delivered: Optional[bool] = None,
        detail: Optional[str] = None,
    ) -> "Outcome":
        return cls(
            OutcomeKind.SUCCESS,
            payload=payload or {},
            email_delivered=email_delivered,
            detail=detail,
        )

    @classmethod
    def failure(
        cls, kind: OutcomeKind, reason: str, *, detail: Optional[str] = None
    ) -> "Outcome":
        return cls(kind, reason=reason, detail=detail)


_KIND_FOR_ERROR = (
    (InvalidTokenError, OutcomeKind.INVALID_TOKEN),
    (ExpiredTokenError, OutcomeKind.EXPIRED_TOKEN),
    (AuthenticationError, OutcomeKind.NOT_AUTHORIZED),
    (ValidationError, OutcomeKind.INVALID_INPUT),
    (ConflictError, OutcomeKind.CONFLICT),
    (NotFoundError, OutcomeKind.NOT_FOUND),
)


def outcome_from_error(exc: ServiceError) -> Outcome:
    """Translate an expected domain failure into its outcome variant."""
    kind = OutcomeKind.INTERNAL_ERROR
    for error_type, candidate in _KIND_FOR_ERROR:
        if isinstance(exc, error_type):
            kind = candidate
            break
    return Outcome.failure(kind, exc.message, detail=exc.reason)


# Outcome kind -> (HTTP status, stable error code) for the response layer
HTTP_STATUS = {
    OutcomeKind.SUCCESS: (200, None),
    OutcomeKind.INVALID_INPUT: (400, "validation_error"),
    OutcomeKind.NOT_AUTHORIZED: (401, "unauthorized"),
    OutcomeKind.INVALID_TOKEN: (401, "invalid_token"),
    OutcomeKind.EXPIRED_TOKEN: (401, "expired_token"),
    OutcomeKind.NOT_FOUND: (404, "not_found"),
    OutcomeKind.CONFLICT: (409, "conflict"),
    OutcomeKind.INTERNAL_ERROR: (500, "server_error"),
}


__all__ = ["HTTP_STATUS", "Outcome", "OutcomeKind", "outcome_from_error"]
