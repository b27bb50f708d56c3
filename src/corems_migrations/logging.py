"""Log output for migration runs.

Run events carry up to three fields, built with :func:`event_fields`:
``scope`` (``core``, ``global`` or a service name), ``schema`` and ``data``
(counts, versions, paths). Console lines lead with the run id and the
scope/schema pair; JSON lines expose the same fields as top-level keys.
"""

from __future__ import annotations

import json
import logging
import time
from contextvars import ContextVar
from typing import Any

from .settings import Settings

_RUN_ID: ContextVar[str | None] = ContextVar("corems_migrations_run_id", default=None)


def bind_run_context(run_id: str | None) -> None:
    """Stamp every record emitted until :func:`clear_run_context` with ``run_id``."""
    _RUN_ID.set(run_id)


def clear_run_context() -> None:
    _RUN_ID.set(None)


def event_fields(*, scope: str | None = None, schema: str | None = None, **data: Any) -> dict[str, Any]:
    """Build the ``extra`` payload for a run event.

    Example:
        logger.info(
            "scope.completed",
            extra=event_fields(scope="user-ms", schema="user_ms", migrations_executed=2),
        )
    """
    return {"scope": scope, "schema": schema, "data": data}


def _target(record: logging.LogRecord) -> str:
    scope = getattr(record, "scope", None)
    schema = getattr(record, "schema", None)
    if scope and schema and scope != schema:
        return f"{scope}/{schema}"
    return scope or schema or ""


class _UtcFormatter(logging.Formatter):
    converter = time.gmtime
    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"


class ConsoleLogFormatter(_UtcFormatter):
    """Single-line output, e.g.::

        2026-10-17T09:12:44.031Z INFO    run=3f2a9c1e user-ms/user_ms scope.completed migrations_executed=2
    """

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s run=%(run_id)s %(target)s%(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        record.run_id = _RUN_ID.get() or "-"
        target = _target(record)
        record.target = f"{target} " if target else ""
        line = super().formatMessage(record)
        data = getattr(record, "data", None) or {}
        if not data:
            return line
        pairs = " ".join(f"{key}={'-' if value is None else value}" for key, value in data.items())
        return f"{line} {pairs}"


class JsonLogFormatter(_UtcFormatter):
    """One JSON object per line for CI log ingestion."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - std signature
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "run_id": _RUN_ID.get(),
            "event": record.getMessage(),
        }
        for key in ("scope", "schema"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        data = getattr(record, "data", None)
        if data:
            payload["data"] = data
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


class _RunnerHandler(logging.StreamHandler):
    """Marks the handler installed by :func:`setup_logging` so repeat calls replace it."""


def setup_logging(settings: Settings) -> None:
    """Attach one stderr handler in the configured format to the root logger."""
    root = logging.getLogger()
    for handler in [h for h in root.handlers if isinstance(h, _RunnerHandler)]:
        root.removeHandler(handler)

    handler = _RunnerHandler()
    handler.setFormatter(JsonLogFormatter() if settings.log_format == "json" else ConsoleLogFormatter())
    root.addHandler(handler)
    root.setLevel(settings.log_level)

    # SQL traces only when explicitly debugging.
    sql_level = logging.DEBUG if settings.log_level == "DEBUG" else logging.WARNING
    logging.getLogger("sqlalchemy").setLevel(sql_level)


__all__ = [
    "ConsoleLogFormatter",
    "JsonLogFormatter",
    "bind_run_context",
    "clear_run_context",
    "event_fields",
    "setup_logging",
]
