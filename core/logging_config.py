"""JSON log lines carrying the id of the schedule run that emitted them."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

# Bound to the execution id for the duration of a schedule run, so every
# pipeline and action log line of one run can be correlated.
_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default="-"
)

# Attributes every LogRecord has; anything else came in through extra=
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "trace_id",
}

_TEXT_FORMAT = "%(levelname)s  %(name)s  [%(trace_id)s]  %(message)s"


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: val for key, val in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One compact JSON object per line: fixed keys first, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        data: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": _trace_id_var.get(),
            **_extras(record),
        }
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        if record.stack_info:
            data["stack"] = self.formatStack(record.stack_info)
        return json.dumps(data, default=str)


class _TraceIdFilter(logging.Filter):
    """Expose the current trace id to plain-text format strings."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Replace the root logger's handlers with a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.addFilter(_TraceIdFilter())
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


@contextmanager
def trace_context(trace_id: str) -> Iterator[str]:
    """Bind *trace_id* to log lines emitted inside the block (async-safe)."""
    token = _trace_id_var.set(trace_id)
    try:
        yield trace_id
    finally:
        _trace_id_var.reset(token)


def get_trace_id() -> str:
    return _trace_id_var.get()
