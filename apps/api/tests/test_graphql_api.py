from __future__ import annotations

import asyncio
import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipecd_api.core.auth import JwtIdentityProvider
from pipecd_api.core.config import get_settings
from pipecd_api.core.database import Base
from pipecd_api.crm.models import CRMPerson
from pipecd_api.events import DomainEvent
from pipecd_api.main import create_app
from pipecd_api.middleware.rate_limit import reset_rate_limiter
from pipecd_api.platform.security import StaticPermissionResolver


SECRET = "test-secret"
U1 = "11111111-1111-1111-1111-111111111111"
U2 = "22222222-2222-2222-2222-222222222222"


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[DomainEvent] = []

    def send(self, event: DomainEvent) -> None:
        self.sent.append(event)


class FailingTransport:
    def send(self, event: DomainEvent) -> None:
        raise ConnectionError("event gateway down")


@pytest.fixture(autouse=True)
def _settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("OTEL_ENABLED", "false")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


def _app(session_factory: sessionmaker[Session], transport: Any, grants: list[str] | None = None) -> FastAPI:
    return create_app(
        get_settings(),
        session_factory=session_factory,
        identity_provider=JwtIdentityProvider(SECRET, audience="authenticated"),
        permission_resolver=StaticPermissionResolver(default_grants=["*"] if grants is None else grants),
        event_transport=transport,
    )


@pytest.fixture()
def app(session_factory: sessionmaker[Session], transport: RecordingTransport) -> FastAPI:
    return _app(session_factory, transport)


@pytest.fixture()
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


def _headers(sub: str, email: str | None = None) -> dict[str, str]:
    claims = {"sub": sub, "aud": "authenticated"}
    if email is not None:
        claims["email"] = email
    return {"Authorization": f"Bearer {jwt.encode(claims, SECRET, algorithm='HS256')}"}


def _gql(client: TestClient, query: str, variables: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> dict[str, Any]:
    response = client.post("/graphql", json={"query": query, "variables": variables or {}}, headers=headers or {})
    assert response.status_code == 200, response.text
    return response.json()


def _error_code(body: dict[str, Any]) -> str:
    assert body.get("errors"), body
    return body["errors"][0]["extensions"]["code"]


def _events(app: FastAPI) -> list[DomainEvent]:
    assert app.state.event_emitter.flush(timeout=5)
    return list(app.state.event_emitter.transport.sent)


CREATE_PERSON = """
mutation CreatePerson($input: PersonInput!) {
  createPerson(input: $input) { id user_id first_name email }
}
"""

CREATE_ORGANIZATION = """
mutation CreateOrganization($input: OrganizationInput!) {
  createOrganization(input: $input) { id user_id name }
}
"""

CREATE_DEAL = """
mutation CreateDeal($input: DealInput!) {
  createDeal(input: $input) { id user_id name amount stage_id }
}
"""

CREATE_LEAD = """
mutation CreateLead($input: LeadInput!) {
  createLead(input: $input) { id user_id name status }
}
"""


def test_health_needs_no_identity(client: TestClient) -> None:
    body = _gql(client, "{ health }")

    assert body == {"data": {"health": "ok"}}


def test_me_returns_verified_identity(client: TestClient) -> None:
    body = _gql(client, "{ me { id email } }", headers=_headers(U1, "u1@example.com"))

    assert body["data"]["me"] == {"id": U1, "email": "u1@example.com"}


def test_invalid_token_is_treated_as_anonymous(client: TestClient) -> None:
    body = _gql(client, "{ me { id } }", headers={"Authorization": "Bearer not-a-jwt"})

    assert _error_code(body) == "UNAUTHENTICATED"
    assert body["errors"][0]["message"] == "Authentication required"


def test_anonymous_mutation_never_reaches_service(client: TestClient, app: FastAPI, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[Any] = []
    service = app.state.dispatch.binding("person").service
    monkeypatch.setattr(service, "create", lambda *args, **kwargs: calls.append(args))

    body = _gql(client, CREATE_PERSON, {"input": {"first_name": "Ada"}})

    assert _error_code(body) == "UNAUTHENTICATED"
    assert calls == []
    assert _events(app) == []


def test_anonymous_queries_are_rejected(client: TestClient) -> None:
    for query in ("{ people { id } }", "{ deals { id } }", "{ leads { id } }"):
        assert _error_code(_gql(client, query)) == "UNAUTHENTICATED"


def test_create_assigns_owner_and_emits_one_event(client: TestClient, app: FastAPI) -> None:
    body = _gql(
        client,
        CREATE_PERSON,
        {"input": {"first_name": "  Ada  ", "email": "ada@example.com"}},
        headers=_headers(U1, "u1@example.com"),
    )

    person = body["data"]["createPerson"]
    assert person["user_id"] == U1
    assert person["first_name"] == "Ada"

    events = _events(app)
    assert [event.name for event in events] == ["crm/person.created"]
    assert events[0].data["id"] == person["id"]
    assert events[0].actor.id == U1


def test_invalid_input_names_the_field_and_writes_nothing(
    client: TestClient, app: FastAPI, session_factory: sessionmaker[Session]
) -> None:
    body = _gql(client, CREATE_PERSON, {"input": {"email": "not-an-email"}}, headers=_headers(U1))

    assert _error_code(body) == "BAD_USER_INPUT"
    assert "email" in body["errors"][0]["message"]
    assert body["errors"][0]["extensions"]["details"]["fields"][0]["path"] == "email"
    assert _events(app) == []
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(CRMPerson)) == 0


def test_person_needs_an_identifying_field(client: TestClient) -> None:
    body = _gql(client, CREATE_PERSON, {"input": {"phone": "555-0100"}}, headers=_headers(U1))

    assert _error_code(body) == "BAD_USER_INPUT"
    assert "first name, last name, or email" in body["errors"][0]["message"]


def test_deal_amount_must_be_positive(client: TestClient) -> None:
    body = _gql(
        client,
        CREATE_DEAL,
        {"input": {"name": "Renewal", "stage_id": str(uuid.uuid4()), "amount": -5}},
        headers=_headers(U1),
    )

    assert _error_code(body) == "BAD_USER_INPUT"
    assert "amount" in body["errors"][0]["message"]


def test_activity_must_be_linked(client: TestClient) -> None:
    body = _gql(
        client,
        """
        mutation { createActivity(input: { type: "CALL", subject: "Intro call" }) { id } }
        """,
        headers=_headers(U1),
    )

    assert _error_code(body) == "BAD_USER_INPUT"
    assert "linked to at least one" in body["errors"][0]["message"]


def test_empty_update_is_rejected(client: TestClient) -> None:
    created = _gql(client, CREATE_ORGANIZATION, {"input": {"name": "Acme"}}, headers=_headers(U1))
    org_id = created["data"]["createOrganization"]["id"]

    body = _gql(
        client,
        "mutation($id: ID!) { updateOrganization(id: $id, input: {}) { id } }",
        {"id": org_id},
        headers=_headers(U1),
    )

    assert _error_code(body) == "BAD_USER_INPUT"
    assert "cannot be empty" in body["errors"][0]["message"]


def test_malformed_id_is_bad_user_input(client: TestClient) -> None:
    body = _gql(client, '{ person(id: "not-a-uuid") { id } }', headers=_headers(U1))

    assert _error_code(body) == "BAD_USER_INPUT"
    assert body["errors"][0]["extensions"]["details"]["fields"] == [{"path": "id", "message": "Invalid ID format"}]


def test_other_users_rows_are_invisible(client: TestClient) -> None:
    created = _gql(client, CREATE_ORGANIZATION, {"input": {"name": "Acme"}}, headers=_headers(U1))
    org_id = created["data"]["createOrganization"]["id"]

    single = _gql(client, "query($id: ID!) { organization(id: $id) { id } }", {"id": org_id}, headers=_headers(U2))
    listing = _gql(client, "{ organizations { id } }", headers=_headers(U2))
    own = _gql(client, "{ organizations { id name } }", headers=_headers(U1))

    assert single == {"data": {"organization": None}}
    assert listing == {"data": {"organizations": []}}
    assert own["data"]["organizations"] == [{"id": org_id, "name": "Acme"}]


def test_updating_someone_elses_row_is_not_found(client: TestClient, app: FastAPI) -> None:
    created = _gql(client, CREATE_ORGANIZATION, {"input": {"name": "Acme"}}, headers=_headers(U1))
    org_id = created["data"]["createOrganization"]["id"]

    body = _gql(
        client,
        'mutation($id: ID!) { updateOrganization(id: $id, input: { name: "Stolen" }) { id } }',
        {"id": org_id},
        headers=_headers(U2),
    )

    assert _error_code(body) == "NOT_FOUND"
    assert body["errors"][0]["message"] == f"Organization with ID {org_id} not found."
    own = _gql(client, "query($id: ID!) { organization(id: $id) { name } }", {"id": org_id}, headers=_headers(U1))
    assert own["data"]["organization"] == {"name": "Acme"}
    assert [event.name for event in _events(app)] == ["crm/organization.created"]


def test_update_round_trip_keeps_unsent_fields(client: TestClient) -> None:
    created = _gql(
        client,
        CREATE_LEAD,
        {"input": {"name": "Grace", "company_name": "Navy"}},
        headers=_headers(U1),
    )
    lead = created["data"]["createLead"]
    assert lead["status"] == "New"

    updated = _gql(
        client,
        'mutation($id: ID!) { updateLead(id: $id, input: { status: "Qualified" }) { id name status user_id } }',
        {"id": lead["id"]},
        headers=_headers(U1),
    )

    assert updated["data"]["updateLead"] == {"id": lead["id"], "name": "Grace", "status": "Qualified", "user_id": U1}


def test_explicit_null_clears_optional_field(client: TestClient) -> None:
    created = _gql(
        client,
        CREATE_PERSON,
        {"input": {"first_name": "Ada", "email": "ada@example.com"}},
        headers=_headers(U1),
    )
    person_id = created["data"]["createPerson"]["id"]

    updated = _gql(
        client,
        "mutation($id: ID!) { updatePerson(id: $id, input: { email: null }) { first_name email } }",
        {"id": person_id},
        headers=_headers(U1),
    )

    assert updated["data"]["updatePerson"] == {"first_name": "Ada", "email": None}


@pytest.mark.parametrize(
    "mutation",
    ["deletePerson", "deleteOrganization", "deleteDeal", "deleteLead", "deleteActivity"],
)
def test_deleting_missing_row_is_not_found(client: TestClient, app: FastAPI, mutation: str) -> None:
    body = _gql(client, f"mutation($id: ID!) {{ {mutation}(id: $id) }}", {"id": str(uuid.uuid4())}, headers=_headers(U1))

    assert _error_code(body) == "NOT_FOUND"
    assert _events(app) == []


def test_delete_emits_deleted_event(client: TestClient, app: FastAPI) -> None:
    created = _gql(client, CREATE_LEAD, {"input": {"email": "lead@example.com"}}, headers=_headers(U1))
    lead_id = created["data"]["createLead"]["id"]

    foreign = _gql(client, "mutation($id: ID!) { deleteLead(id: $id) }", {"id": lead_id}, headers=_headers(U2))
    body = _gql(client, "mutation($id: ID!) { deleteLead(id: $id) }", {"id": lead_id}, headers=_headers(U1))

    assert _error_code(foreign) == "NOT_FOUND"
    assert body == {"data": {"deleteLead": True}}
    events = _events(app)
    assert [event.name for event in events] == ["crm/lead.created", "crm/lead.deleted"]
    assert dict(events[1].data) == {"id": lead_id}


def test_missing_grant_is_forbidden(session_factory: sessionmaker[Session], transport: RecordingTransport) -> None:
    app = _app(session_factory, transport, grants=["person:*"])
    with TestClient(app) as client:
        denied = _gql(client, CREATE_LEAD, {"input": {"name": "Grace"}}, headers=_headers(U1))
        allowed = _gql(client, CREATE_PERSON, {"input": {"first_name": "Ada"}}, headers=_headers(U1))
        listing = _gql(client, "{ leads { id } }", headers=_headers(U1))

    assert _error_code(denied) == "FORBIDDEN"
    assert "lead:create" in denied["errors"][0]["message"]
    assert allowed["data"]["createPerson"]["first_name"] == "Ada"
    assert listing == {"data": {"leads": []}}


def test_event_failure_does_not_change_the_result(session_factory: sessionmaker[Session]) -> None:
    app = _app(session_factory, FailingTransport())
    with TestClient(app) as client:
        created = _gql(client, CREATE_ORGANIZATION, {"input": {"name": "Acme"}}, headers=_headers(U1))
        assert app.state.event_emitter.flush(timeout=5)
        listing = _gql(client, "{ organizations { name } }", headers=_headers(U1))

    assert "errors" not in created
    assert created["data"]["createOrganization"]["name"] == "Acme"
    assert listing["data"]["organizations"] == [{"name": "Acme"}]


def test_unexpected_failure_is_generic_internal_error(client: TestClient, app: FastAPI, monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("connection reset by peer at 10.0.0.5")

    monkeypatch.setattr(app.state.dispatch.binding("person").service, "list", explode)

    response = client.post("/graphql", json={"query": "{ people { id } }"}, headers=_headers(U1))

    body = response.json()
    assert _error_code(body) == "INTERNAL_SERVER_ERROR"
    assert body["errors"][0]["message"] == "An unexpected error occurred during people."
    assert "10.0.0.5" not in response.text


def test_deal_history_records_changes(client: TestClient) -> None:
    created = _gql(
        client,
        CREATE_DEAL,
        {"input": {"name": "Renewal", "stage_id": str(uuid.uuid4()), "amount": 1000}},
        headers=_headers(U1),
    )
    deal_id = created["data"]["createDeal"]["id"]
    _gql(
        client,
        "mutation($id: ID!) { updateDeal(id: $id, input: { amount: 2500 }) { amount } }",
        {"id": deal_id},
        headers=_headers(U1),
    )

    body = _gql(
        client,
        "query($dealId: ID!) { dealHistory(dealId: $dealId) { deal_id event_type changes } }",
        {"dealId": deal_id},
        headers=_headers(U1),
    )
    foreign = _gql(
        client,
        "query($dealId: ID!) { dealHistory(dealId: $dealId) { id } }",
        {"dealId": deal_id},
        headers=_headers(U2),
    )

    history = body["data"]["dealHistory"]
    assert [entry["event_type"] for entry in history] == ["DEAL_CREATED", "DEAL_UPDATED"]
    assert all(entry["deal_id"] == deal_id for entry in history)
    assert history[0]["changes"]["initial"]["name"] == "Renewal"
    assert set(history[1]["changes"]) == {"amount"}
    assert foreign == {"data": {"dealHistory": []}}


def test_deal_history_rejects_malformed_id(client: TestClient) -> None:
    body = _gql(client, '{ dealHistory(dealId: "nope") { id } }', headers=_headers(U1))

    assert _error_code(body) == "BAD_USER_INPUT"
    assert body["errors"][0]["extensions"]["details"]["fields"][0]["path"] == "dealId"


def test_store_calls_run_off_the_event_loop(client: TestClient, app: FastAPI, monkeypatch: pytest.MonkeyPatch) -> None:
    loops_seen: list[bool] = []

    def record_loop(*args: Any, **kwargs: Any) -> list[Any]:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loops_seen.append(False)
        else:
            loops_seen.append(True)
        return []

    monkeypatch.setattr(app.state.dispatch.binding("person").service, "list", record_loop)
    monkeypatch.setattr(app.state.dispatch.binding("deal").service, "list", record_loop)

    body = _gql(client, "{ people { id } deals { id } }", headers=_headers(U1))

    assert body == {"data": {"people": [], "deals": []}}
    assert loops_seen == [False, False]
