from __future__ import annotations

import json
import math
import threading
import time
import uuid
from dataclasses import dataclass, field

from fastapi.responses import JSONResponse
from graphql import (
    DocumentNode,
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    GraphQLSyntaxError,
    InlineFragmentNode,
    OperationDefinitionNode,
    OperationType,
    SelectionSetNode,
    parse,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipecd_api.context import get_correlation_id
from pipecd_api.core.config import get_settings
from pipecd_api.core.context import request_identity
from pipecd_api.metrics import observe_rate_limited


# All mutations of one caller share a bucket; client-chosen operation names never pick it.
MUTATION_ROUTE_GROUP = "graphql_mutation"


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(
        self,
        user_id: str,
        route_group: str,
        capacity: int,
        window_seconds: int,
        cost: int = 1,
    ) -> tuple[bool, int]:
        if capacity <= 0 or cost > capacity:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            current = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            current.tokens = min(float(capacity), current.tokens + max(0.0, now - current.last_refill) * refill_rate)
            current.last_refill = now

            if current.tokens < cost:
                return False, max(1, math.ceil((cost - current.tokens) / refill_rate))

            current.tokens -= cost
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


@dataclass(frozen=True)
class GraphQLOperation:
    name: str
    is_mutation: bool
    root_fields: tuple[str, ...] = field(default=())


def parse_operation(body: bytes) -> GraphQLOperation | None:
    """Finds the operation a GraphQL POST body will execute, if it can be parsed."""

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("query"), str):
        return None

    try:
        document = parse(payload["query"])
    except GraphQLSyntaxError:
        return None

    wanted = payload.get("operationName")
    for definition in document.definitions:
        if not isinstance(definition, OperationDefinitionNode):
            continue
        name = definition.name.value if definition.name is not None else None
        if wanted and name != wanted:
            continue
        root_fields = tuple(_root_fields(document, definition.selection_set, set()))
        # with no explicit name the first operation runs; name the group after its first field
        label = name or (root_fields[0] if root_fields else definition.operation.value)
        return GraphQLOperation(
            name=label,
            is_mutation=definition.operation is OperationType.MUTATION,
            root_fields=root_fields,
        )
    return None


def _root_fields(document: DocumentNode, selection_set: SelectionSetNode, seen: set[str]) -> list[str]:
    """Every top-level field the operation executes, aliases and fragments included."""

    fields: list[str] = []
    for selection in selection_set.selections:
        if isinstance(selection, FieldNode):
            if not selection.name.value.startswith("__"):
                fields.append(selection.name.value)
        elif isinstance(selection, InlineFragmentNode):
            fields.extend(_root_fields(document, selection.selection_set, seen))
        elif isinstance(selection, FragmentSpreadNode) and selection.name.value not in seen:
            seen.add(selection.name.value)
            fragment = _fragment(document, selection.name.value)
            if fragment is not None:
                fields.extend(_root_fields(document, fragment.selection_set, seen))
    return fields


def _fragment(document: DocumentNode, name: str) -> FragmentDefinitionNode | None:
    for definition in document.definitions:
        if isinstance(definition, FragmentDefinitionNode) and definition.name.value == name:
            return definition
    return None


class GraphQLMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket per caller for GraphQL mutations; each root mutation field costs one token."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if request.method.upper() != "POST" or request.url.path.rstrip("/") != settings.graphql_path.rstrip("/"):
            return await call_next(request)

        operation = parse_operation(await request.body())
        if operation is not None:
            request.state.graphql_operation = operation.name
        if settings.rate_limit_disabled or operation is None or not operation.is_mutation:
            return await call_next(request)

        identity = request_identity(request)
        allowed, retry_after = _limiter.take(
            user_id=identity.id if identity is not None else "anonymous",
            route_group=MUTATION_ROUTE_GROUP,
            capacity=settings.rate_limit_graphql_mutations_per_minute,
            window_seconds=60,
            cost=max(1, len(operation.root_fields)),
        )
        if allowed:
            return await call_next(request)

        observe_rate_limited()
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"operation": operation.name},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
