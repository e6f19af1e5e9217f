from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class ConcurrentUpdate(Exception):
    """Raised by ``save`` when the stored record changed since it was read."""

    def __init__(self, account_id: str, expected_version: int):
        super().__init__(
            f"account {account_id} changed since version {expected_version}"
        )
        self.account_id = account_id
        self.expected_version = expected_version


class StorageError(Exception):
    """Backend unreachable, corrupt record, or otherwise unexpected storage failure."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "ConcurrentUpdate", "StorageError"]
