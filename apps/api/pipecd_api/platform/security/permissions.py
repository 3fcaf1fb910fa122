from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pipecd_api.authz.models import RoleCapability, UserRole
from pipecd_api.platform.security.context import Identity, RequestContext
from pipecd_api.platform.security.errors import ForbiddenError


logger = logging.getLogger("pipecd_api.authz")


class Capability(StrEnum):
    PERSON_CREATE = "person:create"
    PERSON_UPDATE_ANY = "person:update_any"
    PERSON_DELETE_ANY = "person:delete_any"
    ORGANIZATION_CREATE = "organization:create"
    ORGANIZATION_UPDATE_ANY = "organization:update_any"
    ORGANIZATION_DELETE_ANY = "organization:delete_any"
    DEAL_CREATE = "deal:create"
    DEAL_UPDATE_ANY = "deal:update_any"
    DEAL_DELETE_ANY = "deal:delete_any"
    LEAD_CREATE = "lead:create"
    LEAD_UPDATE_ANY = "lead:update_any"
    LEAD_DELETE_ANY = "lead:delete_any"
    ACTIVITY_CREATE = "activity:create"
    ACTIVITY_UPDATE_ANY = "activity:update_any"
    ACTIVITY_DELETE_ANY = "activity:delete_any"


def has_capability(ctx: RequestContext, capability: Capability) -> bool:
    return capability in ctx.permissions


def authorize(ctx: RequestContext, capability: Capability) -> None:
    if not has_capability(ctx, capability):
        raise ForbiddenError(f"Forbidden: missing permission {capability.value}")


def expand_grants(grants: Iterable[str]) -> frozenset[Capability]:
    """Resolve grant patterns (``*``, ``person:*`` or exact names) to capabilities."""

    resolved: set[Capability] = set()
    for grant in grants:
        matched = [capability for capability in Capability if _matches(grant, capability.value)]
        if not matched:
            logger.warning("permissions.unknown_grant", extra={"error": grant})
        resolved.update(matched)
    return frozenset(resolved)


def _matches(grant: str, required: str) -> bool:
    if grant in {"*", required}:
        return True
    if grant.endswith(":*"):
        return required.startswith(grant[:-1])
    return False


class PermissionResolver(Protocol):
    def resolve(self, identity: Identity) -> frozenset[Capability]:
        ...


class StaticPermissionResolver:
    """Grants a fixed set to every authenticated caller plus optional per-user extras."""

    def __init__(
        self,
        default_grants: Iterable[str] = ("*",),
        user_grants: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._default = expand_grants(default_grants)
        self._per_user = {user_id: expand_grants(grants) for user_id, grants in (user_grants or {}).items()}

    def resolve(self, identity: Identity) -> frozenset[Capability]:
        return self._default | self._per_user.get(identity.id, frozenset())


class DbPermissionResolver:
    """Reads role capabilities with a privileged session, outside the caller's scope."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def resolve(self, identity: Identity) -> frozenset[Capability]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(RoleCapability.capability)
                .join(UserRole, UserRole.role_id == RoleCapability.role_id)
                .where(UserRole.user_id == identity.id)
            ).all()
        return expand_grants(rows)
