from __future__ import annotations

import pytest

from pipecd_api.graphql.errors import ErrorEnvelope, classify, to_graphql_error
from pipecd_api.platform.security import (
    ConflictError,
    ErrorKind,
    FieldViolation,
    ForbiddenError,
    InputValidationError,
    InternalError,
    NotFoundError,
    StoreError,
    StoreFailure,
    UnauthenticatedError,
)


def test_validation_failure_is_bad_user_input_with_fields() -> None:
    exc = InputValidationError(
        [FieldViolation("email", "value is not a valid email address"), FieldViolation("amount", "must be > 0")]
    )

    envelope = classify(exc, "createDeal")

    assert envelope.code is ErrorKind.BAD_USER_INPUT
    assert envelope.message == "Invalid input: amount: must be > 0; email: value is not a valid email address"
    assert envelope.details == {
        "fields": [
            {"path": "amount", "message": "must be > 0"},
            {"path": "email", "message": "value is not a valid email address"},
        ]
    }


@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (UnauthenticatedError("Authentication required"), ErrorKind.UNAUTHENTICATED),
        (ForbiddenError("Forbidden: missing permission deal:create"), ErrorKind.FORBIDDEN),
        (NotFoundError("Deal with ID x not found."), ErrorKind.NOT_FOUND),
        (ConflictError("Already there"), ErrorKind.CONFLICT),
    ],
)
def test_classified_errors_pass_through(exc: Exception, code: ErrorKind) -> None:
    envelope = classify(exc, "updateDeal")

    assert envelope.code is code
    assert envelope.message == str(exc)


def test_internal_errors_are_normalised_to_generic_message() -> None:
    envelope = classify(InternalError("Failed to create person: no data returned"), "createPerson")

    assert envelope.code is ErrorKind.INTERNAL_SERVER_ERROR
    assert envelope.message == "An unexpected error occurred during createPerson."
    assert envelope.diagnostic == "Failed to create person: no data returned"


def test_unique_violation_maps_to_conflict() -> None:
    exc = StoreError(StoreFailure.UNIQUE_VIOLATION, "insert leads", 'duplicate key value violates "uq_leads_owner_email"')

    envelope = classify(exc, "createLead")

    assert envelope.code is ErrorKind.CONFLICT
    assert "duplicate key" not in envelope.message
    assert "duplicate key" in (envelope.diagnostic or "")


def test_permission_denied_maps_to_forbidden() -> None:
    exc = StoreError(StoreFailure.PERMISSION_DENIED, "insert people", "new row violates row-level security policy")

    assert classify(exc, "createPerson").code is ErrorKind.FORBIDDEN


def test_unknown_store_failure_is_internal_without_leaking() -> None:
    exc = StoreError(StoreFailure.UNKNOWN, "select deals", "relation deals does not exist")

    envelope = classify(exc, "deals")

    assert envelope.code is ErrorKind.INTERNAL_SERVER_ERROR
    assert envelope.message == "An unexpected error occurred during deals."
    assert "relation deals" in (envelope.diagnostic or "")


def test_unexpected_exception_is_internal() -> None:
    envelope = classify(ZeroDivisionError("division by zero"), "updateLead")

    assert envelope.code is ErrorKind.INTERNAL_SERVER_ERROR
    assert envelope.message == "An unexpected error occurred during updateLead."
    assert envelope.diagnostic == "ZeroDivisionError: division by zero"


def test_classifier_never_raises() -> None:
    class Hostile(Exception):
        def __str__(self) -> str:
            raise RuntimeError("cannot render")

    envelope = classify(Hostile(), "createPerson")

    assert envelope.code is ErrorKind.INTERNAL_SERVER_ERROR
    assert envelope.message == "An unexpected error occurred during createPerson."


def test_graphql_error_carries_code_and_details_only() -> None:
    error = to_graphql_error(
        ErrorEnvelope(
            message="Invalid input: name: required",
            code=ErrorKind.BAD_USER_INPUT,
            details={"fields": [{"path": "name", "message": "required"}]},
            diagnostic="secret internals",
        )
    )

    assert error.message == "Invalid input: name: required"
    assert error.extensions == {
        "code": "BAD_USER_INPUT",
        "details": {"fields": [{"path": "name", "message": "required"}]},
    }
    assert "secret internals" not in str(error.formatted)


def test_graphql_error_omits_missing_details() -> None:
    error = to_graphql_error(ErrorEnvelope(message="Not here", code=ErrorKind.NOT_FOUND))

    assert error.extensions == {"code": "NOT_FOUND"}
