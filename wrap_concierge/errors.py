from __future__ import annotations

from typing import Any, Dict, Optional


class InvalidTurnRequest(ValueError):
    """Inbound message is missing session_id or message_text."""


class AdapterUnavailable(RuntimeError):
    """Structured failure from an outbound HTTP adapter (orders, email)."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.details = details or {}


class PersistenceFailure(RuntimeError):
    """A write to the record store failed."""

    def __init__(self, operation: str, cause: Exception) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
