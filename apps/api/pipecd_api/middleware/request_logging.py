from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipecd_api.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("pipecd_api.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=500, duration=elapsed)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": round(elapsed * 1000, 2),
                    "operation": getattr(request.state, "graphql_operation", None),
                },
            )
            raise

        elapsed = time.perf_counter() - started
        observe_http_request(method=method, path=path, status=response.status_code, duration=elapsed)
        fields = {
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(elapsed * 1000, 2),
        }
        # set by the GraphQL rate limiter once it has parsed the request body
        operation = getattr(request.state, "graphql_operation", None)
        if operation:
            fields["operation"] = operation
        logger.info("http.request", extra=fields)
        return response
