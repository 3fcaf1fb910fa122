from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

graphql_operations_total = Counter(
    "graphql_operations_total",
    "Total dispatched GraphQL operations by outcome",
    ["operation", "outcome"],
)

graphql_operation_duration_seconds = Histogram(
    "graphql_operation_duration_seconds",
    "Dispatched GraphQL operation duration in seconds",
    ["operation"],
)

identity_verification_failures_total = Counter(
    "identity_verification_failures_total",
    "Bearer tokens that failed verification",
)

crm_events_total = Counter(
    "crm_events_total",
    "Domain events by delivery status",
    ["event_name", "status"],
)

graphql_rate_limited_total = Counter(
    "graphql_rate_limited_total",
    "GraphQL mutation requests rejected by the rate limiter",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_graphql_operation(operation: str, outcome: str, duration: float) -> None:
    graphql_operations_total.labels(operation=operation, outcome=outcome).inc()
    graphql_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_identity_verification_failure() -> None:
    identity_verification_failures_total.inc()


def observe_event(event_name: str, status: str) -> None:
    crm_events_total.labels(event_name=event_name, status=status).inc()


def observe_rate_limited() -> None:
    graphql_rate_limited_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
