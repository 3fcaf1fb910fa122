from __future__ import annotations

import logging
from collections.abc import Mapping

from starlette.requests import Request

from pipecd_api.context import get_correlation_id
from pipecd_api.core.auth import IdentityProvider, InvalidTokenError, extract_bearer_token
from pipecd_api.metrics import observe_identity_verification_failure
from pipecd_api.platform.security.client import ClientFactory
from pipecd_api.platform.security.context import Identity, RequestContext
from pipecd_api.platform.security.permissions import Capability, PermissionResolver


logger = logging.getLogger("pipecd_api.context")

_UNRESOLVED = object()


class ContextBuilder:
    """Composes token extraction, verification and client scoping once per request.

    ``build`` never raises: a missing, malformed or unverifiable token produces an
    anonymous context with an unscoped client, and operations that need an
    identity reject it later.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        client_factory: ClientFactory,
        permission_resolver: PermissionResolver,
    ) -> None:
        self._identity_provider = identity_provider
        self._client_factory = client_factory
        self._permission_resolver = permission_resolver

    def build(self, headers: Mapping[str, str]) -> RequestContext:
        return self.build_for(self.resolve_identity(headers))

    def build_for(self, identity: Identity | None) -> RequestContext:
        correlation_id = get_correlation_id()
        if identity is None:
            return RequestContext(identity=None, client=self._client_factory.anonymous(), correlation_id=correlation_id)

        return RequestContext(
            identity=identity,
            client=self._client_factory.scoped(identity),
            permissions=self._resolve_permissions(identity),
            correlation_id=correlation_id,
        )

    def resolve_identity(self, headers: Mapping[str, str]) -> Identity | None:
        token = extract_bearer_token(headers)
        if token is None:
            return None
        try:
            return self._identity_provider.verify(token)
        except InvalidTokenError as exc:
            observe_identity_verification_failure()
            logger.warning("identity.verification_failed", extra={"error": str(exc)})
            return None
        except Exception as exc:
            # an unreachable or broken verifier counts as an unverifiable token
            observe_identity_verification_failure()
            logger.exception("identity.verification_failed", extra={"error": str(exc)})
            return None

    def _resolve_permissions(self, identity: Identity) -> frozenset[Capability]:
        try:
            return self._permission_resolver.resolve(identity)
        except Exception as exc:
            logger.exception("permissions.resolve_failed", extra={"user_id": identity.id, "error": str(exc)})
            return frozenset()


def request_identity(request: Request) -> Identity | None:
    """Verifies the request's bearer token at most once; later callers reuse the result."""

    cached = getattr(request.state, "identity", _UNRESOLVED)
    if cached is not _UNRESOLVED:
        return cached

    builder: ContextBuilder | None = getattr(request.app.state, "context_builder", None)
    identity = builder.resolve_identity(request.headers) if builder is not None else None
    request.state.identity = identity
    return identity
