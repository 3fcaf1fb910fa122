from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pipecd_api.platform.security.client import ScopedClient
    from pipecd_api.platform.security.permissions import Capability


@dataclass(frozen=True, slots=True)
class Identity:
    """Caller verified from a bearer token."""

    id: str
    email: str | None = None


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Per-request state handed to every resolver; never shared across requests."""

    identity: Identity | None
    client: ScopedClient
    permissions: frozenset[Capability] = field(default_factory=frozenset)
    correlation_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None
