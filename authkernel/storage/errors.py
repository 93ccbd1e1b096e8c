from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a profile-store uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordStoreError(Exception):
    """The time-boxed record store failed or timed out.

    Security-relevant callers treat this as a failure of the whole request.
    """


__all__ = ["ConstraintViolation", "RecordStoreError"]
