from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(Exception):
    """Raised by per-document updates when the target record does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.key = key


class StoreUnavailable(Exception):
    """Raised when a backing store cannot be reached or returns garbage."""


__all__ = ["ConstraintViolation", "RecordNotFound", "StoreUnavailable"]
