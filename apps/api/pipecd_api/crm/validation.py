from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any
from uuid import UUID

from pydantic import BaseModel, TypeAdapter, ValidationError

from pipecd_api.crm.schemas import (
    ActivityCreate,
    ActivityUpdate,
    DealCreate,
    DealUpdate,
    LeadCreate,
    LeadUpdate,
    OrganizationCreate,
    OrganizationUpdate,
    PersonCreate,
    PersonUpdate,
)
from pipecd_api.platform.security.errors import FieldViolation, InputValidationError


class SchemaId(StrEnum):
    PERSON_CREATE = "person.create"
    PERSON_UPDATE = "person.update"
    ORGANIZATION_CREATE = "organization.create"
    ORGANIZATION_UPDATE = "organization.update"
    DEAL_CREATE = "deal.create"
    DEAL_UPDATE = "deal.update"
    LEAD_CREATE = "lead.create"
    LEAD_UPDATE = "lead.update"
    ACTIVITY_CREATE = "activity.create"
    ACTIVITY_UPDATE = "activity.update"


SCHEMAS: dict[SchemaId, type[BaseModel]] = {
    SchemaId.PERSON_CREATE: PersonCreate,
    SchemaId.PERSON_UPDATE: PersonUpdate,
    SchemaId.ORGANIZATION_CREATE: OrganizationCreate,
    SchemaId.ORGANIZATION_UPDATE: OrganizationUpdate,
    SchemaId.DEAL_CREATE: DealCreate,
    SchemaId.DEAL_UPDATE: DealUpdate,
    SchemaId.LEAD_CREATE: LeadCreate,
    SchemaId.LEAD_UPDATE: LeadUpdate,
    SchemaId.ACTIVITY_CREATE: ActivityCreate,
    SchemaId.ACTIVITY_UPDATE: ActivityUpdate,
}

_ROOT_PATH = "input"
_uuid_adapter = TypeAdapter(UUID)


@dataclass(frozen=True, slots=True)
class ValidatedInput:
    """Schema-checked, normalized input for one operation.

    ``values`` holds only the keys the client supplied, so update callers can tell
    an explicit ``None`` (clear the field) from an absent key (leave it alone).
    """

    schema_id: SchemaId
    values: Mapping[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return dict(self.values)


def _violation(error: Mapping[str, Any]) -> FieldViolation:
    path = ".".join(str(part) for part in error.get("loc", ())) or _ROOT_PATH
    return FieldViolation(path=path, message=str(error.get("msg", "Invalid value")))


def validate(schema_id: SchemaId, raw_input: Mapping[str, Any] | None) -> ValidatedInput:
    if raw_input is None:
        raw_input = {}
    if not isinstance(raw_input, Mapping):
        raise InputValidationError([FieldViolation(path=_ROOT_PATH, message="Input must be an object")])

    schema = SCHEMAS[schema_id]
    try:
        model = schema.model_validate(dict(raw_input))
    except ValidationError as exc:
        raise InputValidationError([_violation(error) for error in exc.errors()]) from exc

    return ValidatedInput(schema_id=schema_id, values=MappingProxyType(model.model_dump(exclude_unset=True)))


def validate_id(raw_id: Any, field: str = "id") -> UUID:
    try:
        return _uuid_adapter.validate_python(raw_id)
    except ValidationError as exc:
        raise InputValidationError([FieldViolation(path=field, message="Invalid ID format")]) from exc
