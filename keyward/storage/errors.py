from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Storage collaborator failure that must not be retried by the caller."""

    retryable: bool = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(StorageError):
    """Backend unreachable or timed out; the caller may retry the whole operation."""

    retryable = True


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


__all__ = ["StorageError", "StorageUnavailable", "ConstraintViolation"]
