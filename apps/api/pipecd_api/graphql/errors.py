from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from graphql import GraphQLError

from pipecd_api.platform.security.errors import (
    CrmError,
    ErrorKind,
    InputValidationError,
    StoreError,
    StoreFailure,
)


@dataclass(frozen=True, slots=True)
class ErrorEnvelope:
    message: str
    code: ErrorKind
    details: dict[str, Any] | None = None
    # logged server side only, never put on the wire
    diagnostic: str | None = None


def _generic_message(action: str) -> str:
    return f"An unexpected error occurred during {action}."


def _classify(exc: BaseException, action: str) -> ErrorEnvelope:
    if isinstance(exc, InputValidationError):
        return ErrorEnvelope(message=exc.message, code=exc.kind, details=exc.details)

    if isinstance(exc, CrmError):
        diagnostic = str(exc.cause) if exc.cause is not None else None
        if exc.kind is ErrorKind.INTERNAL_SERVER_ERROR:
            return ErrorEnvelope(message=_generic_message(action), code=exc.kind, diagnostic=exc.message)
        return ErrorEnvelope(message=exc.message, code=exc.kind, details=exc.details, diagnostic=diagnostic)

    if isinstance(exc, StoreError):
        if exc.failure is StoreFailure.UNIQUE_VIOLATION:
            return ErrorEnvelope(
                message=f"A record with these details already exists ({action}).",
                code=ErrorKind.CONFLICT,
                diagnostic=str(exc),
            )
        if exc.failure is StoreFailure.PERMISSION_DENIED:
            return ErrorEnvelope(
                message=f"You do not have permission to perform {action}.",
                code=ErrorKind.FORBIDDEN,
                diagnostic=str(exc),
            )
        return ErrorEnvelope(
            message=_generic_message(action),
            code=ErrorKind.INTERNAL_SERVER_ERROR,
            diagnostic=str(exc),
        )

    return ErrorEnvelope(
        message=_generic_message(action),
        code=ErrorKind.INTERNAL_SERVER_ERROR,
        diagnostic=f"{type(exc).__name__}: {exc}",
    )


def classify(exc: BaseException, action: str) -> ErrorEnvelope:
    """Map any failure to the closed set of wire codes. Never raises."""

    try:
        return _classify(exc, action)
    except Exception as inner:  # noqa: BLE001
        return ErrorEnvelope(
            message=_generic_message(action),
            code=ErrorKind.INTERNAL_SERVER_ERROR,
            diagnostic=f"classifier failure: {type(inner).__name__}",
        )


def to_graphql_error(envelope: ErrorEnvelope) -> GraphQLError:
    extensions: dict[str, Any] = {"code": envelope.code.value}
    if envelope.details is not None:
        extensions["details"] = envelope.details
    return GraphQLError(envelope.message, extensions=extensions)
