from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by the reference stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A write would break a uniqueness rule (duplicate email or identifier)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        detail = dict(detail or {})
        if field is not None:
            detail.setdefault("field", field)
        super().__init__(message, detail)
        self.field = field


__all__ = ["StorageError", "ConstraintViolation"]
