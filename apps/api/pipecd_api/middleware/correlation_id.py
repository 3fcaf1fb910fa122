from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipecd_api.context import correlation_scope


CORRELATION_HEADER = "x-correlation-id"
_MAX_INBOUND_LENGTH = 128


def resolve_correlation_id(raw: str | None) -> str:
    """Keeps a caller-supplied id when it is usable, otherwise mints a UUID."""

    value = (raw or "").strip()
    if not value or len(value) > _MAX_INBOUND_LENGTH or not value.isprintable():
        return str(uuid.uuid4())
    return value


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
