from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any

from pipecd_api.context import get_correlation_id


# Only these ``extra=`` keys reach the output; anything else passed to a logger is dropped.
LOG_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "operation",
    "event_name",
    "error_code",
    "error",
    "user_id",
)

_MAX_ERROR_CHARS = 500
_BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+")
_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _stamp_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_correlation_id(_DEFAULT_RECORD_FACTORY(*args, **kwargs))


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_correlation_id(record)
        return True


def scrub(value: str) -> str:
    """Masks bearer credentials and caps the length of a free-text error."""

    return _BEARER_RE.sub("Bearer [redacted]", value)[:_MAX_ERROR_CHARS]


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: getattr(record, key) for key in LOG_FIELDS if hasattr(record, key)}
    if isinstance(fields.get("error"), str):
        fields["error"] = scrub(fields["error"])
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = record_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """One readable line per record, for local runs with ``LOG_FORMAT=console``."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            self.formatTime(record),
            record.levelname,
            record.name,
            record.getMessage(),
            f"correlation_id={getattr(record, 'correlation_id', None)}",
        ]
        parts.extend(f"{key}={value}" for key, value in record_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_pipecd_configured", False):
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved_level = getattr(logging, level_name, logging.INFO)
    output = (fmt or os.getenv("LOG_FORMAT", "json")).lower()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved_level)
    handler.setFormatter(ConsoleLogFormatter() if output == "console" else JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(resolved_level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._pipecd_configured = True  # type: ignore[attr-defined]
