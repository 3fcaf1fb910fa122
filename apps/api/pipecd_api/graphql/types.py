import dataclasses
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, TypeVar

import strawberry
from pydantic import BaseModel
from strawberry.scalars import JSON


TypeT = TypeVar("TypeT")


def _to_wire(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return strawberry.ID(str(value))
    if isinstance(value, Decimal):
        return float(value)
    return value


def from_record(graphql_type: type[TypeT], record: BaseModel) -> TypeT:
    """Builds an output object from a service read model."""

    names = {field.name for field in dataclasses.fields(graphql_type)}  # type: ignore[arg-type]
    values = {name: _to_wire(value) for name, value in record.model_dump().items() if name in names}
    return graphql_type(**values)


def input_values(data: Any) -> dict[str, Any]:
    """Keys the client actually sent; an explicit null is kept, an omitted field is not."""

    if data is None:
        return {}
    return {
        field.name: getattr(data, field.name)
        for field in dataclasses.fields(data)
        if getattr(data, field.name) is not strawberry.UNSET
    }


@strawberry.type
class Viewer:
    id: strawberry.ID
    email: Optional[str]


@strawberry.type
class Person:
    id: strawberry.ID
    user_id: strawberry.ID
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    job_title: Optional[str]
    notes: Optional[str]
    organization_id: Optional[strawberry.ID]
    created_at: datetime
    updated_at: datetime


@strawberry.type
class Organization:
    id: strawberry.ID
    user_id: strawberry.ID
    name: str
    address: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime


@strawberry.type
class Deal:
    id: strawberry.ID
    user_id: strawberry.ID
    name: str
    stage_id: strawberry.ID
    amount: Optional[float]
    expected_close_date: Optional[date]
    person_id: Optional[strawberry.ID]
    organization_id: Optional[strawberry.ID]
    created_at: datetime
    updated_at: datetime


@strawberry.type
class DealHistoryEntry:
    id: strawberry.ID
    deal_id: strawberry.ID
    user_id: strawberry.ID
    event_type: str
    changes: Optional[JSON]
    created_at: datetime


@strawberry.type
class Lead:
    id: strawberry.ID
    user_id: strawberry.ID
    name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    company_name: Optional[str]
    source: Optional[str]
    status: str
    notes: Optional[str]
    estimated_value: Optional[float]
    created_at: datetime
    updated_at: datetime


@strawberry.type
class Activity:
    id: strawberry.ID
    user_id: strawberry.ID
    type: str
    subject: str
    due_date: Optional[datetime]
    notes: Optional[str]
    is_done: bool
    deal_id: Optional[strawberry.ID]
    person_id: Optional[strawberry.ID]
    organization_id: Optional[strawberry.ID]
    created_at: datetime
    updated_at: datetime


# Every input field is optional on the wire; required fields and formats are
# enforced by the pydantic schemas so that failures come back as BAD_USER_INPUT.


@strawberry.input
class PersonInput:
    first_name: Optional[str] = strawberry.UNSET
    last_name: Optional[str] = strawberry.UNSET
    email: Optional[str] = strawberry.UNSET
    phone: Optional[str] = strawberry.UNSET
    job_title: Optional[str] = strawberry.UNSET
    notes: Optional[str] = strawberry.UNSET
    organization_id: Optional[strawberry.ID] = strawberry.UNSET


@strawberry.input
class PersonUpdateInput(PersonInput):
    pass


@strawberry.input
class OrganizationInput:
    name: Optional[str] = strawberry.UNSET
    address: Optional[str] = strawberry.UNSET
    notes: Optional[str] = strawberry.UNSET


@strawberry.input
class OrganizationUpdateInput(OrganizationInput):
    pass


@strawberry.input
class DealInput:
    name: Optional[str] = strawberry.UNSET
    stage_id: Optional[strawberry.ID] = strawberry.UNSET
    amount: Optional[float] = strawberry.UNSET
    expected_close_date: Optional[date] = strawberry.UNSET
    person_id: Optional[strawberry.ID] = strawberry.UNSET
    organization_id: Optional[strawberry.ID] = strawberry.UNSET


@strawberry.input
class DealUpdateInput(DealInput):
    pass


@strawberry.input
class LeadInput:
    name: Optional[str] = strawberry.UNSET
    email: Optional[str] = strawberry.UNSET
    phone: Optional[str] = strawberry.UNSET
    company_name: Optional[str] = strawberry.UNSET
    source: Optional[str] = strawberry.UNSET
    status: Optional[str] = strawberry.UNSET
    notes: Optional[str] = strawberry.UNSET
    estimated_value: Optional[float] = strawberry.UNSET


@strawberry.input
class LeadUpdateInput(LeadInput):
    pass


@strawberry.input
class ActivityInput:
    type: Optional[str] = strawberry.UNSET
    subject: Optional[str] = strawberry.UNSET
    due_date: Optional[datetime] = strawberry.UNSET
    notes: Optional[str] = strawberry.UNSET
    is_done: Optional[bool] = strawberry.UNSET
    deal_id: Optional[strawberry.ID] = strawberry.UNSET
    person_id: Optional[strawberry.ID] = strawberry.UNSET
    organization_id: Optional[strawberry.ID] = strawberry.UNSET


@strawberry.input
class ActivityUpdateInput(ActivityInput):
    pass
