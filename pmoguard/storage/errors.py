from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or reference constraint in the store is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(LookupError):
    """Raised when a write targets a row that does not exist in the given tenant."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.key = key


__all__ = ["ConstraintViolation", "RecordNotFound"]
