"""Error kinds raised by the lending engine and the result type handed to callers.

Every failure of a library operation is one of three kinds:

- ``NotFound``: a referenced member, book, copy, loan, reservation or user id
  does not exist.
- ``PolicyViolation``: a business rule rejected the operation; the message
  names the rule.
- ``StoreFailure``: the underlying SQLite store failed. Operations run in a
  single transaction, so the store was rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional


class ErrorKind(Enum):
    NOT_FOUND = "NotFound"
    POLICY_VIOLATION = "PolicyViolation"
    STORE_FAILURE = "StoreFailure"


class LendingError(Exception):
    """Base class for failures surfaced by library operations."""

    kind: ErrorKind = ErrorKind.POLICY_VIOLATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(LendingError, LookupError):
    kind = ErrorKind.NOT_FOUND

    @classmethod
    def for_entity(cls, entity: str, entity_id: Any) -> "NotFound":
        return cls(f"{entity} {entity_id} not found")


class PolicyViolation(LendingError, ValueError):
    kind = ErrorKind.POLICY_VIOLATION


class StoreFailure(LendingError):
    kind = ErrorKind.STORE_FAILURE


class ExternalServiceError(Exception):
    """Raised when a catalog metadata provider cannot be reached."""


@dataclass
class OperationResult:
    success: bool
    value: Any = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def ok(cls, value: Any = None) -> "OperationResult":
        return cls(success=True, value=value)

    @classmethod
    def failure(cls, error: LendingError) -> "OperationResult":
        return cls(success=False, error_kind=error.kind, message=error.message)

    @classmethod
    def capture(cls, func: Callable[..., Any], *args: Any, **kwargs: Any) -> "OperationResult":
        """Run ``func`` and fold a raised ``LendingError`` into a failure result."""
        try:
            return cls.ok(func(*args, **kwargs))
        except LendingError as exc:
            return cls.failure(exc)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
            return {"success": True, "value": value}
        return {
            "success": False,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "detail": self.message,
        }
