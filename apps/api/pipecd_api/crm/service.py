from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from sqlalchemy import inspect

from pipecd_api.crm.models import CRMActivity, CRMDeal, CRMDealHistory, CRMLead, CRMOrganization, CRMPerson
from pipecd_api.crm.schemas import (
    ActivityRead,
    DealHistoryRead,
    DealRead,
    LeadRead,
    OrganizationRead,
    PersonRead,
)
from pipecd_api.crm.validation import ValidatedInput
from pipecd_api.platform.security.client import ScopedClient
from pipecd_api.platform.security.errors import InternalError, StoreError, StoreFailure


logger = logging.getLogger("pipecd_api.crm")

ReadT = TypeVar("ReadT", bound=BaseModel)

SERVER_MANAGED_FIELDS = frozenset({"id", "user_id", "created_at", "updated_at"})

DEAL_CREATED = "DEAL_CREATED"
DEAL_UPDATED = "DEAL_UPDATED"
DEAL_DELETED = "DEAL_DELETED"


def _client_values(data: ValidatedInput | Mapping[str, Any]) -> dict[str, Any]:
    values = data.as_dict() if isinstance(data, ValidatedInput) else dict(data)
    return {key: value for key, value in values.items() if key not in SERVER_MANAGED_FIELDS}


class EntityService(Generic[ReadT]):
    """Uniform CRUD over one owned table, always through the caller's scoped client.

    The service never opens or commits a transaction itself; callers run it inside
    ``client.transaction()`` so that a mutation and its side rows commit together.
    """

    model: ClassVar[Any]
    read_model: ClassVar[type[BaseModel]]
    entity: ClassVar[str]

    def _to_read(self, row: Any) -> ReadT:
        return self.read_model.model_validate(row)  # type: ignore[return-value]

    def list(self, client: ScopedClient) -> list[ReadT]:
        rows = client.fetch_all(self.model, order_by=self.model.created_at.desc())
        return [self._to_read(row) for row in rows]

    def get_by_id(self, client: ScopedClient, record_id: uuid.UUID) -> ReadT | None:
        row = client.fetch_one(self.model, record_id)
        return self._to_read(row) if row is not None else None

    def create(self, client: ScopedClient, owner_id: str, data: ValidatedInput | Mapping[str, Any]) -> ReadT:
        values = _client_values(data)
        inserted = client.insert(self.model, owner_id, values)

        persisted = client.fetch_one(self.model, inserted.id)
        if persisted is None:
            raise InternalError(f"Failed to create {self.entity}: no data returned")
        self.after_create(client, owner_id, persisted)
        return self._to_read(persisted)

    def update(
        self,
        client: ScopedClient,
        record_id: uuid.UUID,
        data: ValidatedInput | Mapping[str, Any],
    ) -> ReadT | None:
        values = _client_values(data)
        if not values:
            return self.get_by_id(client, record_id)

        before = self.before_update(client, record_id, values)
        if client.update(self.model, record_id, values) == 0:
            return None

        row = client.fetch_one(self.model, record_id)
        if row is None:
            return None
        self.after_update(client, row, before)
        return self._to_read(row)

    def delete(self, client: ScopedClient, record_id: uuid.UUID) -> bool:
        try:
            removed = client.delete(self.model, record_id)
        except StoreError as exc:
            if exc.failure is not StoreFailure.PERMISSION_DENIED:
                raise
            logger.info(
                "crm.delete_denied",
                extra={"operation": f"delete {self.entity}", "error": exc.store_message},
            )
            return False
        if removed:
            self.after_delete(client, record_id)
        return removed > 0

    def before_update(self, client: ScopedClient, record_id: uuid.UUID, values: dict[str, Any]) -> Any:
        return None

    def after_create(self, client: ScopedClient, owner_id: str, row: Any) -> None:
        return None

    def after_update(self, client: ScopedClient, row: Any, before: Any) -> None:
        return None

    def after_delete(self, client: ScopedClient, record_id: uuid.UUID) -> None:
        return None


class PersonService(EntityService[PersonRead]):
    model = CRMPerson
    read_model = PersonRead
    entity = "person"


class OrganizationService(EntityService[OrganizationRead]):
    model = CRMOrganization
    read_model = OrganizationRead
    entity = "organization"


class LeadService(EntityService[LeadRead]):
    model = CRMLead
    read_model = LeadRead
    entity = "lead"


class ActivityService(EntityService[ActivityRead]):
    model = CRMActivity
    read_model = ActivityRead
    entity = "activity"


_DEAL_TRACKED_FIELDS = ("name", "stage_id", "amount", "expected_close_date", "person_id", "organization_id")


def _snapshot(row: Any, fields: tuple[str, ...] = _DEAL_TRACKED_FIELDS) -> dict[str, Any]:
    state = inspect(row)
    return {name: state.attrs[name].value for name in fields}


class DealService(EntityService[DealRead]):
    """Deals additionally keep an append-only ``deal_history`` trail."""

    model = CRMDeal
    read_model = DealRead
    entity = "deal"

    def history(self, client: ScopedClient, deal_id: uuid.UUID) -> list[DealHistoryRead]:
        rows = client.fetch_all(
            CRMDealHistory,
            CRMDealHistory.deal_id == deal_id,
            order_by=CRMDealHistory.created_at.asc(),
        )
        return [DealHistoryRead.model_validate(row) for row in rows]

    def before_update(self, client: ScopedClient, record_id: uuid.UUID, values: dict[str, Any]) -> Any:
        row = client.fetch_one(CRMDeal, record_id)
        return _snapshot(row) if row is not None else None

    def after_create(self, client: ScopedClient, owner_id: str, row: Any) -> None:
        self._record(client, row.id, DEAL_CREATED, {"initial": _snapshot(row)})

    def after_update(self, client: ScopedClient, row: Any, before: Any) -> None:
        if not before:
            return
        after = _snapshot(row)
        changed = {
            name: {"old": before[name], "new": after[name]}
            for name in _DEAL_TRACKED_FIELDS
            if before[name] != after[name]
        }
        if changed:
            self._record(client, row.id, DEAL_UPDATED, changed)

    def after_delete(self, client: ScopedClient, record_id: uuid.UUID) -> None:
        self._record(client, record_id, DEAL_DELETED, None)

    def _record(self, client: ScopedClient, deal_id: uuid.UUID, event_type: str, changes: dict[str, Any] | None) -> None:
        identity = client.identity
        if identity is None:
            return
        client.insert(
            CRMDealHistory,
            identity.id,
            {
                "deal_id": deal_id,
                "event_type": event_type,
                "changes": to_jsonable_python(changes) if changes is not None else None,
            },
        )
