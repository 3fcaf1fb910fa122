from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session, sessionmaker
from strawberry.fastapi import GraphQLRouter

from pipecd_api.api.routes import router as api_router
from pipecd_api.core.auth import IdentityProvider, JwtIdentityProvider
from pipecd_api.core.celery_app import DISPATCH_EVENT_TASK, celery_app
from pipecd_api.core.config import Settings, get_settings
from pipecd_api.core.context import ContextBuilder
from pipecd_api.core.database import get_session_factory
from pipecd_api.core.events import InternalEvent, event_bus
from pipecd_api.events import CeleryEventTransport, EventEmitter, EventTransport, InProcessEventTransport
from pipecd_api.graphql.context import get_context
from pipecd_api.graphql.dispatch import CrmServices, ResolverDispatch
from pipecd_api.graphql.schema import schema
from pipecd_api.logging import configure_logging
from pipecd_api.middleware.correlation_id import CorrelationIdMiddleware
from pipecd_api.middleware.rate_limit import GraphQLMutationRateLimitMiddleware
from pipecd_api.middleware.request_logging import RequestLoggingMiddleware
from pipecd_api.otel import get_fastapi_server_request_hook, setup_otel
from pipecd_api.platform.security import ClientFactory, DbPermissionResolver, PermissionResolver, StaticPermissionResolver


configure_logging()
logger = logging.getLogger("pipecd_api.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def build_permission_resolver(settings: Settings, session_factory: sessionmaker[Session]) -> PermissionResolver:
    backend_choice = settings.authz_backend.lower()
    if backend_choice == "auto":
        backend_choice = "db" if settings.app_env.lower() in {"prod", "production"} else "static"

    if backend_choice == "db":
        return DbPermissionResolver(session_factory)
    return StaticPermissionResolver(default_grants=settings.authz_default_grants)


def build_event_transport(settings: Settings) -> EventTransport:
    if settings.event_transport.lower() == "celery":
        return CeleryEventTransport(celery_app, task_name=DISPATCH_EVENT_TASK)
    return InProcessEventTransport(event_bus)


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    identity_provider: IdentityProvider | None = None,
    permission_resolver: PermissionResolver | None = None,
    event_transport: EventTransport | None = None,
    services: CrmServices | None = None,
) -> FastAPI:
    """Wires the request pipeline from explicit collaborators; anything omitted comes from settings."""

    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    identity_provider = identity_provider or JwtIdentityProvider(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        audience=settings.jwt_audience,
    )
    permission_resolver = permission_resolver or build_permission_resolver(settings, session_factory)
    emitter = EventEmitter(event_transport or build_event_transport(settings), max_workers=settings.event_worker_threads)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.publish("system.started", {"service": settings.app_name})
        try:
            yield
        finally:
            event_bus.unsubscribe("system.started", _on_system_started)
            emitter.shutdown()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.context_builder = ContextBuilder(identity_provider, ClientFactory(session_factory), permission_resolver)
    app.state.event_emitter = emitter
    app.state.dispatch = ResolverDispatch(emitter, services)

    app.add_middleware(GraphQLMutationRateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.include_router(api_router)

    graphql_router = GraphQLRouter(
        schema,
        context_getter=get_context,
        graphql_ide="graphiql" if settings.graphiql_enabled else None,
    )
    app.include_router(graphql_router, prefix=settings.graphql_path)

    if settings.otel_enabled:
        setup_otel(settings.app_name, True)

    if not getattr(app, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
    return app


app = create_app()
