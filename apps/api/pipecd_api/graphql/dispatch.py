from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from pipecd_api.crm.service import (
    ActivityService,
    DealService,
    EntityService,
    LeadService,
    OrganizationService,
    PersonService,
)
from pipecd_api.crm.schemas import DealHistoryRead
from pipecd_api.crm.validation import SchemaId, validate, validate_id
from pipecd_api.events import CREATED, DELETED, UPDATED, DomainEvent, EventActor, EventEmitter, event_name
from pipecd_api.graphql.errors import classify, to_graphql_error
from pipecd_api.metrics import observe_graphql_operation
from pipecd_api.otel import mark_operation_failed, operation_span
from pipecd_api.platform.security import (
    Capability,
    ErrorKind,
    Identity,
    NotFoundError,
    RequestContext,
    UnauthenticatedError,
    authorize,
)


logger = logging.getLogger("pipecd_api.graphql")

T = TypeVar("T")


@dataclass(frozen=True)
class EntityBinding:
    """Everything dispatch needs to serve one aggregate."""

    entity: str
    label: str
    service: EntityService[Any]
    create_schema: SchemaId
    update_schema: SchemaId
    create_capability: Capability
    update_capability: Capability
    delete_capability: Capability


@dataclass
class CrmServices:
    person: PersonService
    organization: OrganizationService
    deal: DealService
    lead: LeadService
    activity: ActivityService

    @classmethod
    def default(cls) -> CrmServices:
        return cls(
            person=PersonService(),
            organization=OrganizationService(),
            deal=DealService(),
            lead=LeadService(),
            activity=ActivityService(),
        )


def build_bindings(services: CrmServices) -> dict[str, EntityBinding]:
    return {
        "person": EntityBinding(
            entity="person",
            label="Person",
            service=services.person,
            create_schema=SchemaId.PERSON_CREATE,
            update_schema=SchemaId.PERSON_UPDATE,
            create_capability=Capability.PERSON_CREATE,
            update_capability=Capability.PERSON_UPDATE_ANY,
            delete_capability=Capability.PERSON_DELETE_ANY,
        ),
        "organization": EntityBinding(
            entity="organization",
            label="Organization",
            service=services.organization,
            create_schema=SchemaId.ORGANIZATION_CREATE,
            update_schema=SchemaId.ORGANIZATION_UPDATE,
            create_capability=Capability.ORGANIZATION_CREATE,
            update_capability=Capability.ORGANIZATION_UPDATE_ANY,
            delete_capability=Capability.ORGANIZATION_DELETE_ANY,
        ),
        "deal": EntityBinding(
            entity="deal",
            label="Deal",
            service=services.deal,
            create_schema=SchemaId.DEAL_CREATE,
            update_schema=SchemaId.DEAL_UPDATE,
            create_capability=Capability.DEAL_CREATE,
            update_capability=Capability.DEAL_UPDATE_ANY,
            delete_capability=Capability.DEAL_DELETE_ANY,
        ),
        "lead": EntityBinding(
            entity="lead",
            label="Lead",
            service=services.lead,
            create_schema=SchemaId.LEAD_CREATE,
            update_schema=SchemaId.LEAD_UPDATE,
            create_capability=Capability.LEAD_CREATE,
            update_capability=Capability.LEAD_UPDATE_ANY,
            delete_capability=Capability.LEAD_DELETE_ANY,
        ),
        "activity": EntityBinding(
            entity="activity",
            label="Activity",
            service=services.activity,
            create_schema=SchemaId.ACTIVITY_CREATE,
            update_schema=SchemaId.ACTIVITY_UPDATE,
            create_capability=Capability.ACTIVITY_CREATE,
            update_capability=Capability.ACTIVITY_UPDATE_ANY,
            delete_capability=Capability.ACTIVITY_DELETE_ANY,
        ),
    }


def require_identity(ctx: RequestContext) -> Identity:
    if ctx.identity is None:
        raise UnauthenticatedError("Authentication required")
    return ctx.identity


class ResolverDispatch:
    """Runs every CRM operation through the same pipeline.

    authenticate -> validate -> authorize -> service call (inside the scoped
    client's transaction) -> emit event. The first failure stops the pipeline and
    is classified into a wire error; the event is only emitted after commit.
    """

    def __init__(self, emitter: EventEmitter, services: CrmServices | None = None) -> None:
        self.emitter = emitter
        self.services = services or CrmServices.default()
        self.bindings = build_bindings(self.services)

    def binding(self, entity: str) -> EntityBinding:
        return self.bindings[entity]

    def run(self, operation: str, ctx: RequestContext, handler: Callable[[], T]) -> T:
        started = time.perf_counter()
        user_id = ctx.identity.id if ctx.identity is not None else None
        with operation_span(operation, user_id) as span:
            try:
                result = handler()
            except Exception as exc:
                envelope = classify(exc, operation)
                mark_operation_failed(span, envelope.code.value)
                log = logger.error if envelope.code is ErrorKind.INTERNAL_SERVER_ERROR else logger.info
                log(
                    "graphql.operation_failed",
                    extra={
                        "operation": operation,
                        "error_code": envelope.code.value,
                        "error": envelope.diagnostic or envelope.message,
                        "user_id": user_id,
                    },
                )
                observe_graphql_operation(operation, envelope.code.value, time.perf_counter() - started)
                raise to_graphql_error(envelope) from exc

        observe_graphql_operation(operation, "ok", time.perf_counter() - started)
        return result

    # --- queries ---

    def me(self, ctx: RequestContext) -> Identity:
        return self.run("me", ctx, lambda: require_identity(ctx))

    def list_all(self, operation: str, ctx: RequestContext, entity: str) -> list[Any]:
        binding = self.binding(entity)

        def handler() -> list[Any]:
            require_identity(ctx)
            with ctx.client.transaction():
                return binding.service.list(ctx.client)

        return self.run(operation, ctx, handler)

    def get(self, operation: str, ctx: RequestContext, entity: str, raw_id: Any) -> Any | None:
        binding = self.binding(entity)

        def handler() -> Any | None:
            require_identity(ctx)
            record_id = validate_id(raw_id)
            with ctx.client.transaction():
                return binding.service.get_by_id(ctx.client, record_id)

        return self.run(operation, ctx, handler)

    def deal_history(self, ctx: RequestContext, raw_deal_id: Any) -> list[DealHistoryRead]:
        def handler() -> list[DealHistoryRead]:
            require_identity(ctx)
            deal_id = validate_id(raw_deal_id, field="dealId")
            with ctx.client.transaction():
                return self.services.deal.history(ctx.client, deal_id)

        return self.run("dealHistory", ctx, handler)

    # --- mutations ---

    def create(self, operation: str, ctx: RequestContext, entity: str, raw_input: Mapping[str, Any] | None) -> Any:
        binding = self.binding(entity)

        def handler() -> Any:
            identity = require_identity(ctx)
            validated = validate(binding.create_schema, raw_input)
            authorize(ctx, binding.create_capability)
            with ctx.client.transaction():
                record = binding.service.create(ctx.client, identity.id, validated)
            self._emit(identity, event_name(entity, CREATED), record)
            return record

        return self.run(operation, ctx, handler)

    def update(
        self,
        operation: str,
        ctx: RequestContext,
        entity: str,
        raw_id: Any,
        raw_input: Mapping[str, Any] | None,
    ) -> Any:
        binding = self.binding(entity)

        def handler() -> Any:
            identity = require_identity(ctx)
            record_id = validate_id(raw_id)
            validated = validate(binding.update_schema, raw_input)
            authorize(ctx, binding.update_capability)
            with ctx.client.transaction():
                record = binding.service.update(ctx.client, record_id, validated)
            if record is None:
                raise NotFoundError(f"{binding.label} with ID {record_id} not found.")
            self._emit(identity, event_name(entity, UPDATED), record)
            return record

        return self.run(operation, ctx, handler)

    def delete(self, operation: str, ctx: RequestContext, entity: str, raw_id: Any) -> bool:
        binding = self.binding(entity)

        def handler() -> bool:
            identity = require_identity(ctx)
            record_id = validate_id(raw_id)
            authorize(ctx, binding.delete_capability)
            with ctx.client.transaction():
                removed = binding.service.delete(ctx.client, record_id)
            if not removed:
                raise NotFoundError(f"{binding.label} with ID {record_id} not found.")
            self._emit(identity, event_name(entity, DELETED), {"id": str(record_id)})
            return True

        return self.run(operation, ctx, handler)

    def _emit(self, identity: Identity, name: str, record: Any) -> None:
        data = record.model_dump(mode="json") if hasattr(record, "model_dump") else record
        self.emitter.emit(DomainEvent(name=name, data=data, actor=EventActor(id=identity.id, email=identity.email)))
