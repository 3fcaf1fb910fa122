from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    BAD_USER_INPUT = "BAD_USER_INPUT"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class CrmError(Exception):
    """Failure already classified into one of the wire error kinds."""

    kind: ErrorKind = ErrorKind.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.cause = cause


class UnauthenticatedError(CrmError):
    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(CrmError):
    kind = ErrorKind.FORBIDDEN


class NotFoundError(CrmError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(CrmError):
    kind = ErrorKind.CONFLICT


class InternalError(CrmError):
    kind = ErrorKind.INTERNAL_SERVER_ERROR


@dataclass(frozen=True, slots=True)
class FieldViolation:
    path: str
    message: str


class InputValidationError(CrmError):
    """Raised when client input fails its schema; carries one violation per field."""

    kind = ErrorKind.BAD_USER_INPUT

    def __init__(self, violations: list[FieldViolation] | tuple[FieldViolation, ...]) -> None:
        self.violations = tuple(sorted(violations, key=lambda item: (item.path, item.message)))
        rendered = "; ".join(f"{item.path}: {item.message}" for item in self.violations)
        super().__init__(
            f"Invalid input: {rendered}",
            details={"fields": [{"path": item.path, "message": item.message} for item in self.violations]},
        )


class StoreFailure(StrEnum):
    UNIQUE_VIOLATION = "23505"
    PERMISSION_DENIED = "42501"
    UNKNOWN = "unknown"


class StoreError(Exception):
    """Failure reported by the database, tagged with the recognised SQLSTATE."""

    def __init__(self, failure: StoreFailure, operation: str, store_message: str) -> None:
        super().__init__(f"Database operation failed in {operation}: {store_message}")
        self.failure = failure
        self.operation = operation
        self.store_message = store_message
