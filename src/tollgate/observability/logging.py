"""
Structured logging for tollgate.

Every module logs through a `StructuredLogger` obtained from `get_logger()`.
Keyword arguments become fields of the record, and `bind()` returns a
logger that carries fields (executor id, intent, invoice reference) through
a whole dispatch.

`configure_logging()` installs one handler on the ``tollgate`` logger and
chooses JSON or console rendering. Fields whose names look like key
material are masked before rendering, and records logged inside a
recording span carry its trace and span ids.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict

ROOT_LOGGER = "tollgate"
FIELDS_ATTR = "tollgate_fields"

_SENSITIVE_MARKERS = ("secret", "private_key", "password")
_MASK = "***"


class LogConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    format: str = "json"  # "json" or "console"
    include_trace_context: bool = True
    log_file: str | None = None


class StructuredLogger:
    """Thin wrapper over a stdlib logger that attaches keyword fields to records."""

    __slots__ = ("_logger", "_fields")

    def __init__(self, name: str, fields: dict[str, Any] | None = None) -> None:
        self._logger = logging.getLogger(name)
        self._fields = fields or {}

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **fields: Any) -> StructuredLogger:
        """Logger sharing this one's output, with extra fields on every record."""
        return StructuredLogger(self._logger.name, {**self._fields, **fields})

    def debug(self, msg: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._emit(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._emit(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._emit(logging.ERROR, msg, fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._emit(logging.ERROR, msg, fields, exc_info=True)

    def _emit(
        self,
        level: int,
        msg: str,
        fields: dict[str, Any],
        exc_info: bool = False,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            msg,
            exc_info=exc_info,
            extra={FIELDS_ATTR: {**self._fields, **fields}},
            stacklevel=3,
        )


def get_logger(name: str) -> StructuredLogger:
    """Logger under the ``tollgate`` hierarchy; ``name`` is usually ``__name__``."""
    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return StructuredLogger(name)


def configure_logging(config: LogConfig | None = None) -> StructuredLogger:
    """
    Install the tollgate handler, replacing any previous one.

    Safe to call again; the latest configuration wins.
    """
    config = config or LogConfig()
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(config.level.upper())

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handler: logging.Handler
    if config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JSONFormatter() if config.format == "json" else _ConsoleFormatter())
    if config.include_trace_context:
        handler.addFilter(_TraceContextFilter())
    root.addHandler(handler)
    return StructuredLogger(ROOT_LOGGER)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = getattr(record, FIELDS_ATTR, None) or {}
    return {
        key: _MASK if any(marker in key.lower() for marker in _SENSITIVE_MARKERS) else value
        for key, value in fields.items()
    }


class _TraceContextFilter(logging.Filter):
    """Adds trace/span ids of the current recording span to the record fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = trace.get_current_span().get_span_context()
        if ctx.is_valid:
            fields = dict(getattr(record, FIELDS_ATTR, None) or {})
            fields.setdefault("trace_id", format(ctx.trace_id, "032x"))
            fields.setdefault("span_id", format(ctx.span_id, "016x"))
            setattr(record, FIELDS_ATTR, fields)
        return True


class _JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{stamp} {record.levelname:<7} {record.name}: {record.getMessage()}"
        fields = _record_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line
