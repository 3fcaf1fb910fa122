import logging
from typing import Any

from celery import Celery

from pipecd_api.core.config import get_settings
from pipecd_api.core.events import event_bus

DISPATCH_EVENT_TASK = "pipecd.events.dispatch"

logger = logging.getLogger("pipecd_api.events.worker")
settings = get_settings()

celery_app = Celery("pipecd_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name=DISPATCH_EVENT_TASK)
def dispatch_event_task(name: str, payload: dict[str, Any]) -> int:
    """Republishes an API event to this worker's subscribers; returns how many handled it."""

    logger.info("event.received", extra={"event_name": name})
    return event_bus.publish(name, payload)
