from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from strawberry.fastapi import BaseContext

from pipecd_api.core.context import ContextBuilder, request_identity
from pipecd_api.graphql.dispatch import ResolverDispatch
from pipecd_api.platform.security import RequestContext


T = TypeVar("T")


class GraphQLContext(BaseContext):
    def __init__(self, request_context: RequestContext, dispatch: ResolverDispatch) -> None:
        super().__init__()
        self.request_context = request_context
        self.dispatch = dispatch
        # sibling root fields resolve concurrently but share one session
        self._session_lock = threading.Lock()

    async def run(self, operation: Callable[..., T], *args: Any) -> T:
        """Runs a blocking dispatch call in the threadpool, one at a time per request."""

        return await run_in_threadpool(self._run_locked, operation, *args)

    def _run_locked(self, operation: Callable[..., T], *args: Any) -> T:
        with self._session_lock:
            return operation(*args)


def get_context(request: Request) -> Iterator[GraphQLContext]:
    """Builds the per-request context and releases its scoped session afterwards."""

    builder: ContextBuilder = request.app.state.context_builder
    request_context = builder.build_for(request_identity(request))
    try:
        yield GraphQLContext(request_context, request.app.state.dispatch)
    finally:
        request_context.client.close()
