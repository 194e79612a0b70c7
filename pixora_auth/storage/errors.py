from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the database or cache cannot be reached within its timeout.

    Kept distinct from policy failures so a dead backend is never reported
    to a client as bad credentials.
    """

    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable", *, backend: str = "store"):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.detail: Dict[str, Any] = {}


__all__ = ["ConstraintViolation", "StorageUnavailable"]
