"""Logging setup for the pipeline services.

``configure_logging`` installs one stream handler on the root logger, either
plain text or one JSON object per line. ``log_event`` bridges the event bus to
logging: subscribe it with ``bus.subscribe_all(log_event)``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from .events import PipelineEvent

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

event_logger = logging.getLogger("pipeline_core.events")

# Event names logged above INFO.
WARNING_EVENTS = {
    "extraction_error",
    "data_source_error",
    "operation_failed",
    "retry_attempt",
    "circuit_breaker_opened",
    "circuit_breaker_rejected",
    "processing_error",
    "alert_created",
}
ERROR_EVENTS = {
    "job_failed",
    "max_retries_reached",
    "non_retryable_error",
    "processor_error",
}


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON with any ``extra`` fields."""

    RESERVED_FIELDS = {
        "name", "msg", "args", "created", "filename", "funcName", "levelname",
        "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
        "processName", "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self.RESERVED_FIELDS and not key.startswith("_")
        }
        if context:
            log_data["context"] = context
        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def log_event(event: PipelineEvent) -> None:
    if event.name in ERROR_EVENTS:
        level = logging.ERROR
    elif event.name in WARNING_EVENTS:
        level = logging.WARNING
    else:
        level = logging.INFO
    event_logger.log(
        level,
        "%s from %s",
        event.name,
        event.source,
        extra={"event": event.name, "event_source": event.source},
    )
