from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from pydantic_core import to_jsonable_python

from pipecd_api.context import get_correlation_id
from pipecd_api.core.events import InProcessEventBus
from pipecd_api.metrics import observe_event

if TYPE_CHECKING:
    from celery import Celery


logger = logging.getLogger("pipecd_api.events")

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"


def event_name(entity: str, action: str) -> str:
    return f"crm/{entity}.{action}"


@dataclass(frozen=True, slots=True)
class EventActor:
    id: str
    email: str | None = None


@dataclass(frozen=True)
class DomainEvent:
    name: str
    data: Any
    actor: EventActor
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = field(default_factory=get_correlation_id)

    def __post_init__(self) -> None:
        if isinstance(self.data, dict):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def to_payload(self) -> dict[str, Any]:
        data = dict(self.data) if isinstance(self.data, MappingProxyType) else self.data
        return {
            "event_id": self.event_id,
            "name": self.name,
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": self.correlation_id,
            "actor": {"id": self.actor.id, "email": self.actor.email},
            "data": to_jsonable_python(data),
        }


@dataclass(frozen=True, slots=True)
class EmitResult:
    scheduled: bool
    error: str | None = None


class EventTransport(Protocol):
    def send(self, event: DomainEvent) -> None:
        ...


class InProcessEventTransport:
    def __init__(self, bus: InProcessEventBus) -> None:
        self._bus = bus

    def send(self, event: DomainEvent) -> None:
        self._bus.publish(event.name, event.to_payload())


class CeleryEventTransport:
    """Hands events to a Celery worker by task name, so the API never imports the consumers."""

    def __init__(self, celery_app: Celery, task_name: str = "pipecd.events.dispatch") -> None:
        self._celery_app = celery_app
        self._task_name = task_name

    def send(self, event: DomainEvent) -> None:
        self._celery_app.send_task(self._task_name, args=[event.name, event.to_payload()])


class EventEmitter:
    """Schedules delivery of domain events without waiting on it.

    ``emit`` never raises: a refused schedule is reported through the returned
    ``EmitResult`` and a failed delivery is only logged and counted.
    """

    def __init__(self, transport: EventTransport, max_workers: int = 4) -> None:
        self._transport = transport
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipecd-events")
        self._pending: set[Future[None]] = set()
        self._lock = Lock()

    @property
    def transport(self) -> EventTransport:
        return self._transport

    def emit(self, event: DomainEvent) -> EmitResult:
        try:
            future = self._executor.submit(self._deliver, event)
        except Exception as exc:
            logger.error(
                "event.schedule_failed",
                extra={"event_name": event.name, "error": str(exc)},
            )
            observe_event(event.name, "schedule_failed")
            return EmitResult(scheduled=False, error=str(exc))

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return EmitResult(scheduled=True)

    def _deliver(self, event: DomainEvent) -> None:
        try:
            self._transport.send(event)
        except Exception as exc:
            logger.error(
                "event.emit_failed",
                extra={"event_name": event.name, "error": str(exc), "user_id": event.actor.id},
            )
            observe_event(event.name, "failed")
            return
        observe_event(event.name, "sent")

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: float | None = None) -> bool:
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
