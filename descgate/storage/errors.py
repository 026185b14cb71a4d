from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the document store cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TransactionConflict(StoreError):
    """Raised when an optimistic transaction keeps losing to concurrent writers."""


class StoreUnavailable(StoreError):
    """Raised when the backing store is unreachable."""


__all__ = ["StoreError", "TransactionConflict", "StoreUnavailable"]
