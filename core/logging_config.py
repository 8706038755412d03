"""Engine logging: JSON or plain lines, each stamped with the current trace_id."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from datetime import datetime, timezone

# One trace_id per scheduler tick or API-triggered dispatch
_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default="-"
)

# LogRecord attributes that are not caller-supplied extra= fields
_RECORD_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName", "trace_id",
})

_PLAIN_FORMAT = "%(levelname)s  [%(trace_id)s]  %(name)s  %(message)s"

# APScheduler reports every job execution at INFO
_CHATTY_LOGGERS = ("apscheduler.scheduler", "apscheduler.executors.default")


class TraceIdFilter(logging.Filter):
    """Copy the context's trace_id onto each record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    """One compact JSON object per log line, extra= fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict = {
            "ts":       datetime.fromtimestamp(record.created, tz=timezone.utc)
                        .strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level":    record.levelname,
            "logger":   record.name,
            "msg":      record.message,
            "trace_id": getattr(record, "trace_id", None) or _trace_id_var.get(),
        }
        data.update({
            key: val for key, val in record.__dict__.items()
            if key not in _RECORD_FIELDS and not key.startswith("_")
        })
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Route the root logger to a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TraceIdFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_trace_id(trace_id: str | None = None) -> str:
    """Bind *trace_id* (a fresh 8-hex id when omitted) to the current context."""
    trace_id = trace_id or uuid.uuid4().hex[:8]
    _trace_id_var.set(trace_id)
    return trace_id


def get_trace_id() -> str:
    return _trace_id_var.get()
