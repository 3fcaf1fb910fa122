from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic_core import PydanticCustomError


ActivityType = Literal["TASK", "MEETING", "CALL", "EMAIL", "DEADLINE"]
LeadStatus = Literal["New", "Working", "Qualified", "Disqualified", "Converted"]


def _reject_null(value: Any) -> Any:
    if value is None:
        raise PydanticCustomError("null_not_allowed", "Field cannot be null")
    return value


class InputModel(BaseModel):
    """Client input: strings are trimmed and unknown keys (owner, ids) are dropped."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class UpdateInputModel(InputModel):
    """Partial input; absent means unchanged, explicit null means clear."""

    @model_validator(mode="after")
    def require_some_field(self) -> UpdateInputModel:
        if not self.model_fields_set:
            raise PydanticCustomError(
                "empty_update",
                "Update input cannot be empty. Provide at least one field to update.",
            )
        return self


# --- Person ---


class PersonFields(InputModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    job_title: str | None = None
    notes: str | None = None
    organization_id: UUID | None = None


class PersonCreate(PersonFields):
    @model_validator(mode="after")
    def require_identifying_field(self) -> PersonCreate:
        if not (self.first_name or self.last_name or self.email):
            raise PydanticCustomError(
                "identifying_field_required",
                "At least a first name, last name, or email is required",
            )
        return self


class PersonUpdate(PersonFields, UpdateInputModel):
    pass


class PersonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    first_name: str | None
    last_name: str | None
    email: str | None
    phone: str | None
    job_title: str | None
    notes: str | None
    organization_id: UUID | None
    created_at: datetime
    updated_at: datetime


# --- Organization ---


class OrganizationCreate(InputModel):
    name: str = Field(min_length=1)
    address: str | None = None
    notes: str | None = None


class OrganizationUpdate(UpdateInputModel):
    name: str | None = Field(default=None, min_length=1)
    address: str | None = None
    notes: str | None = None

    reject_null_name = field_validator("name", mode="before")(_reject_null)


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    name: str
    address: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


# --- Deal ---


class DealCreate(InputModel):
    name: str = Field(min_length=1)
    stage_id: UUID
    amount: Decimal | None = Field(default=None, gt=0, max_digits=18, decimal_places=2)
    expected_close_date: date | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None


class DealUpdate(UpdateInputModel):
    name: str | None = Field(default=None, min_length=1)
    stage_id: UUID | None = None
    amount: Decimal | None = Field(default=None, gt=0, max_digits=18, decimal_places=2)
    expected_close_date: date | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None

    reject_null_required = field_validator("name", "stage_id", mode="before")(_reject_null)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    name: str
    stage_id: UUID
    amount: Decimal | None
    expected_close_date: date | None
    person_id: UUID | None
    organization_id: UUID | None
    created_at: datetime
    updated_at: datetime


class DealHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    user_id: str
    event_type: str
    changes: dict[str, Any] | None
    created_at: datetime


# --- Lead ---


class LeadFields(InputModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company_name: str | None = Field(default=None, min_length=1)
    source: str | None = Field(default=None, max_length=64)
    notes: str | None = None
    estimated_value: Decimal | None = Field(default=None, gt=0, max_digits=18, decimal_places=2)


class LeadCreate(LeadFields):
    status: LeadStatus | None = None

    @model_validator(mode="after")
    def require_identifying_field(self) -> LeadCreate:
        if not (self.name or self.email or self.company_name):
            raise PydanticCustomError(
                "identifying_field_required",
                "At least a name, email, or company name is required",
            )
        return self


class LeadUpdate(LeadFields, UpdateInputModel):
    status: LeadStatus | None = None

    reject_null_status = field_validator("status", mode="before")(_reject_null)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    name: str | None
    email: str | None
    phone: str | None
    company_name: str | None
    source: str | None
    status: str
    notes: str | None
    estimated_value: Decimal | None
    created_at: datetime
    updated_at: datetime


# --- Activity ---


class ActivityCreate(InputModel):
    type: ActivityType
    subject: str = Field(min_length=1)
    due_date: datetime | None = None
    notes: str | None = None
    is_done: bool | None = None
    deal_id: UUID | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None

    @model_validator(mode="after")
    def require_link(self) -> ActivityCreate:
        if not (self.deal_id or self.person_id or self.organization_id):
            raise PydanticCustomError(
                "link_required",
                "An activity must be linked to at least one Deal, Person, or Organization.",
            )
        return self


class ActivityUpdate(UpdateInputModel):
    type: ActivityType | None = None
    subject: str | None = Field(default=None, min_length=1)
    due_date: datetime | None = None
    notes: str | None = None
    is_done: bool | None = None
    deal_id: UUID | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None

    reject_null_required = field_validator("type", "subject", "is_done", mode="before")(_reject_null)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    type: str
    subject: str
    due_date: datetime | None
    notes: str | None
    is_done: bool
    deal_id: UUID | None
    person_id: UUID | None
    organization_id: UUID | None
    created_at: datetime
    updated_at: datetime
