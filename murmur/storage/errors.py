from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the backing database or cache cannot be reached in time."""

    def __init__(self, backend: str, message: str = "storage backend unavailable"):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


__all__ = ["ConstraintViolation", "StorageUnavailable"]
