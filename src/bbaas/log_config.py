"""
Structured logging for the orchestrator and the sandbox worker.

Every log call is a single "wide event": a dotted event name plus keyword
fields, rendered as one JSON object per line.

    log = get_logger("manager", service="orchestrator")
    log.info("sandbox.start", container_id=cid)
    log.error("sandbox.remove_error", exc=e, container_id=cid)

Inside the sandbox these lines travel through the same multiplexed log stream
as the job protocol, so they must never contain a protocol marker.
"""

import json
import logging
import os
import sys
import time
from typing import Any, TextIO

_CONFIGURED = False

_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render a record and its structured fields as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": round(record.created, 3),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        return json.dumps(payload, default=str)


class StructuredLogger:
    """Thin wrapper over a stdlib logger that binds context fields."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any]):
        self._logger = logger
        self._context = context

    def bind(self, **fields: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger, {**self._context, **fields})

    def _log(self, level: int, event: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return

        exc = fields.pop("exc", None)
        extra: dict[str, Any] = {}
        for key, value in {**self._context, **fields}.items():
            # stdlib refuses extras that shadow LogRecord attributes
            extra[f"{key}_" if key in _RESERVED_ATTRS else key] = value
        if exc is not None:
            extra["error_type"] = type(exc).__name__
            extra["error"] = str(exc)

        self._logger.log(level, event, extra=extra)

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, fields)

    warning = warn

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, fields)


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """
    Install the JSON handler on the ``bbaas`` logger hierarchy (idempotent).

    Logs go to stderr unless ``stream`` is given. The sandbox worker passes
    stdout so its log lines share one ordered stream with the protocol lines.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger("bbaas")
    root.handlers = [handler]
    root.setLevel(getattr(logging, resolved, logging.INFO))
    root.propagate = False

    logging.Formatter.converter = time.gmtime
    _CONFIGURED = True


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Return a structured logger under the ``bbaas`` namespace with bound context."""
    return StructuredLogger(logging.getLogger(f"bbaas.{name}"), context)
