from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy import Select, delete, event, false, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pipecd_api.platform.security.context import Identity
from pipecd_api.platform.security.errors import StoreError, StoreFailure


ModelT = TypeVar("ModelT")

_RLS_INSERT_DENIED = "new row violates row-level security policy"


def _failure_for(exc: SQLAlchemyError) -> StoreFailure:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == StoreFailure.UNIQUE_VIOLATION.value:
        return StoreFailure.UNIQUE_VIOLATION
    if sqlstate == StoreFailure.PERMISSION_DENIED.value:
        return StoreFailure.PERMISSION_DENIED
    if isinstance(exc, IntegrityError) and "UNIQUE constraint failed" in str(orig):
        return StoreFailure.UNIQUE_VIOLATION
    return StoreFailure.UNKNOWN


class ScopedClient:
    """Database handle bound to one caller.

    Every statement issued through this client carries the caller's identity: on
    PostgreSQL the JWT claims are set for each transaction so row-level security
    policies apply, and every select/update/delete is additionally filtered on the
    ``user_id`` owner column. An anonymous client sees and changes nothing.
    """

    def __init__(self, session: Session, identity: Identity | None) -> None:
        self._session = session
        self._identity = identity
        if identity is not None:
            event.listen(session, "after_begin", self._attach_claims)

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def session(self) -> Session:
        return self._session

    def _attach_claims(self, session: Session, transaction: Any, connection: Any) -> None:
        if connection.dialect.name != "postgresql" or self._identity is None:
            return
        claims = json.dumps({"sub": self._identity.id, "email": self._identity.email, "role": "authenticated"})
        connection.execute(
            text("select set_config('request.jwt.claim.sub', :sub, true), set_config('request.jwt.claims', :claims, true)"),
            {"sub": self._identity.id, "claims": claims},
        )

    def _owned(self, model: Any) -> Any:
        if self._identity is None:
            return false()
        return model.user_id == self._identity.id

    def select(self, model: type[ModelT]) -> Select[tuple[ModelT]]:
        return select(model).where(self._owned(model))

    def fetch_all(self, model: type[ModelT], *criteria: Any, order_by: Any = None) -> list[ModelT]:
        stmt = self.select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        with self._store_errors(f"select {model.__tablename__}"):  # type: ignore[attr-defined]
            return list(self._session.scalars(stmt).all())

    def fetch_one(self, model: type[ModelT], record_id: Any) -> ModelT | None:
        stmt = self.select(model).where(model.id == record_id)  # type: ignore[attr-defined]
        with self._store_errors(f"select {model.__tablename__}"):  # type: ignore[attr-defined]
            return self._session.scalar(stmt)

    def insert(self, model: type[ModelT], owner_id: str, values: dict[str, Any]) -> ModelT:
        operation = f"insert {model.__tablename__}"  # type: ignore[attr-defined]
        if self._identity is None or owner_id != self._identity.id:
            raise StoreError(StoreFailure.PERMISSION_DENIED, operation, _RLS_INSERT_DENIED)

        record = model(**values, user_id=owner_id)
        with self._store_errors(operation):
            self._session.add(record)
            self._session.flush()
        return record

    def update(self, model: type[ModelT], record_id: Any, values: dict[str, Any]) -> int:
        stmt = (
            update(model)
            .where(model.id == record_id, self._owned(model))  # type: ignore[attr-defined]
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        with self._store_errors(f"update {model.__tablename__}"):  # type: ignore[attr-defined]
            result = self._session.execute(stmt)
        return int(result.rowcount or 0)

    def delete(self, model: type[ModelT], record_id: Any) -> int:
        stmt = (
            delete(model)
            .where(model.id == record_id, self._owned(model))  # type: ignore[attr-defined]
            .execution_options(synchronize_session="fetch")
        )
        with self._store_errors(f"delete {model.__tablename__}"):  # type: ignore[attr-defined]
            result = self._session.execute(stmt)
        return int(result.rowcount or 0)

    @contextmanager
    def transaction(self) -> Iterator[ScopedClient]:
        try:
            yield self
            with self._store_errors("commit"):
                self._session.commit()
        except BaseException:
            self._session.rollback()
            raise

    def close(self) -> None:
        if self._identity is not None and event.contains(self._session, "after_begin", self._attach_claims):
            event.remove(self._session, "after_begin", self._attach_claims)
        self._session.close()

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise StoreError(_failure_for(exc), operation, str(getattr(exc, "orig", None) or exc)) from exc


class ClientFactory:
    """Builds a fresh scoped client per request from the startup session factory."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def scoped(self, identity: Identity) -> ScopedClient:
        return ScopedClient(self._session_factory(), identity)

    def anonymous(self) -> ScopedClient:
        return ScopedClient(self._session_factory(), None)
