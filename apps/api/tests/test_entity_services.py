from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipecd_api.core.database import Base
from pipecd_api.crm.service import (
    ActivityService,
    DealService,
    LeadService,
    OrganizationService,
    PersonService,
)
from pipecd_api.crm.validation import SchemaId, validate
from pipecd_api.platform.security import (
    ClientFactory,
    Identity,
    InternalError,
    ScopedClient,
    StoreError,
    StoreFailure,
)


U1 = Identity(id="user-1", email="u1@test.com")
U2 = Identity(id="user-2", email="u2@test.com")


@pytest.fixture()
def factory() -> Generator[ClientFactory, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield ClientFactory(sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False))
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def u1_client(factory: ClientFactory) -> Generator[ScopedClient, None, None]:
    client = factory.scoped(U1)
    yield client
    client.close()


@pytest.fixture()
def u2_client(factory: ClientFactory) -> Generator[ScopedClient, None, None]:
    client = factory.scoped(U2)
    yield client
    client.close()


def test_create_sets_owner_from_identity_not_input(u1_client: ScopedClient) -> None:
    service = PersonService()

    with u1_client.transaction():
        person = service.create(
            u1_client,
            U1.id,
            {"first_name": "Jane", "email": "jane@test.com", "user_id": "user-2", "id": "forged"},
        )

    assert person.user_id == U1.id
    assert person.first_name == "Jane"
    assert isinstance(person.id, uuid.UUID)


def test_create_returns_persisted_row(u1_client: ScopedClient) -> None:
    service = LeadService()

    with u1_client.transaction():
        lead = service.create(u1_client, U1.id, validate(SchemaId.LEAD_CREATE, {"company_name": "Acme"}))
    with u1_client.transaction():
        fetched = service.get_by_id(u1_client, lead.id)

    assert lead.status == "New"
    assert fetched is not None
    assert fetched.model_dump(exclude={"created_at", "updated_at"}) == lead.model_dump(
        exclude={"created_at", "updated_at"}
    )


def test_create_without_returned_row_is_internal_error() -> None:
    class VanishingClient:
        identity = U1

        def insert(self, model: Any, owner_id: str, values: dict[str, Any]) -> Any:
            return SimpleNamespace(id=uuid.uuid4())

        def fetch_one(self, model: Any, record_id: Any) -> None:
            return None

    with pytest.raises(InternalError) as exc_info:
        OrganizationService().create(VanishingClient(), U1.id, {"name": "Ghost"})  # type: ignore[arg-type]

    assert "no data returned" in exc_info.value.message


def test_list_and_get_are_owner_scoped(u1_client: ScopedClient, u2_client: ScopedClient) -> None:
    service = OrganizationService()
    with u1_client.transaction():
        mine = service.create(u1_client, U1.id, {"name": "Mine"})
    with u2_client.transaction():
        theirs = service.create(u2_client, U2.id, {"name": "Theirs"})

    with u1_client.transaction():
        assert [org.name for org in service.list(u1_client)] == ["Mine"]
        assert service.get_by_id(u1_client, mine.id) is not None
        assert service.get_by_id(u1_client, theirs.id) is None


def test_update_returns_none_for_missing_or_foreign_row(u1_client: ScopedClient, u2_client: ScopedClient) -> None:
    service = OrganizationService()
    with u2_client.transaction():
        theirs = service.create(u2_client, U2.id, {"name": "Theirs"})

    with u1_client.transaction():
        assert service.update(u1_client, theirs.id, {"name": "Stolen"}) is None
        assert service.update(u1_client, uuid.uuid4(), {"name": "Nothing"}) is None


def test_update_changes_only_supplied_fields(u1_client: ScopedClient) -> None:
    service = PersonService()
    with u1_client.transaction():
        person = service.create(u1_client, U1.id, {"first_name": "Jane", "phone": "555-0100"})
    with u1_client.transaction():
        updated = service.update(u1_client, person.id, validate(SchemaId.PERSON_UPDATE, {"phone": None}))

    assert updated is not None
    assert updated.first_name == "Jane"
    assert updated.phone is None
    assert updated.user_id == U1.id


def test_update_cannot_change_owner(u1_client: ScopedClient) -> None:
    service = ActivityService()
    with u1_client.transaction():
        activity = service.create(
            u1_client,
            U1.id,
            {"type": "CALL", "subject": "Intro", "deal_id": uuid.uuid4()},
        )
    with u1_client.transaction():
        updated = service.update(u1_client, activity.id, {"user_id": U2.id, "is_done": True})

    assert updated is not None
    assert updated.user_id == U1.id
    assert updated.is_done is True


def test_delete_reports_removed_rows(u1_client: ScopedClient, u2_client: ScopedClient) -> None:
    service = LeadService()
    with u1_client.transaction():
        lead = service.create(u1_client, U1.id, {"name": "Sam"})

    with u2_client.transaction():
        assert service.delete(u2_client, lead.id) is False
    with u1_client.transaction():
        assert service.delete(u1_client, lead.id) is True
    with u1_client.transaction():
        assert service.delete(u1_client, lead.id) is False


def test_delete_degrades_permission_denied_to_false() -> None:
    class DenyingClient:
        identity = U1

        def delete(self, model: Any, record_id: Any) -> int:
            raise StoreError(StoreFailure.PERMISSION_DENIED, "delete deals", "permission denied for table deals")

    assert DealService().delete(DenyingClient(), uuid.uuid4()) is False  # type: ignore[arg-type]


def test_delete_propagates_other_store_failures() -> None:
    class BrokenClient:
        identity = U1

        def delete(self, model: Any, record_id: Any) -> int:
            raise StoreError(StoreFailure.UNKNOWN, "delete people", "connection reset")

    with pytest.raises(StoreError):
        PersonService().delete(BrokenClient(), uuid.uuid4())  # type: ignore[arg-type]


def test_deal_history_trail(u1_client: ScopedClient, u2_client: ScopedClient) -> None:
    service = DealService()
    stage_id = uuid.uuid4()

    with u1_client.transaction():
        deal = service.create(
            u1_client,
            U1.id,
            validate(SchemaId.DEAL_CREATE, {"name": "Big deal", "stage_id": str(stage_id), "amount": 1000}),
        )
    with u1_client.transaction():
        updated = service.update(
            u1_client,
            deal.id,
            validate(SchemaId.DEAL_UPDATE, {"amount": 2500, "name": "Big deal"}),
        )
    with u1_client.transaction():
        assert service.delete(u1_client, deal.id) is True

    assert updated is not None
    assert updated.amount == Decimal("2500")

    with u1_client.transaction():
        history = service.history(u1_client, deal.id)

    assert [entry.event_type for entry in history] == ["DEAL_CREATED", "DEAL_UPDATED", "DEAL_DELETED"]
    assert all(entry.user_id == U1.id for entry in history)
    assert history[0].changes is not None
    assert history[0].changes["initial"]["stage_id"] == str(stage_id)
    assert set(history[1].changes or {}) == {"amount"}
    assert Decimal(history[1].changes["amount"]["old"]) == Decimal("1000")  # type: ignore[index]
    assert Decimal(history[1].changes["amount"]["new"]) == Decimal("2500")  # type: ignore[index]

    with u2_client.transaction():
        assert service.history(u2_client, deal.id) == []
