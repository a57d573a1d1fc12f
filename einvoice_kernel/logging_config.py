"""Structured JSON logging for the e-invoicing core."""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

# Fields every log line may carry.  Worker threads start with an empty
# context and bind the batch/business they act for.
CONTEXT_FIELDS = (
    "correlation_id",
    "actor_id",
    "producer",
    "business_id",
    "batch_id",
    "invoice_id",
)

_context: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"einvoice_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def _var(name: str) -> ContextVar[str | None]:
    try:
        return _context[name]
    except KeyError:
        raise TypeError(f"Unknown log context field: {name!r}") from None


class LogContext:
    """Context-local fields merged into every structured log record."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set context fields. None values leave the current value alone."""
        for name, val in fields.items():
            if val is not None:
                _var(name).set(str(val))

    @staticmethod
    def get_all() -> dict[str, str]:
        return {
            name: val for name, var in _context.items()
            if (val := var.get()) is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _context.values():
            var.set(None)

    @staticmethod
    def bind(**fields: Any) -> "_BoundContext":
        """Set fields for the duration of a ``with`` block, then restore them."""
        return _BoundContext(fields)


class _BoundContext:
    def __init__(self, fields: dict[str, Any]):
        self._fields = {name: val for name, val in fields.items() if val is not None}
        for name in self._fields:
            _var(name)
        self._tokens: list[tuple[ContextVar[str | None], Token]] = []

    def __enter__(self) -> type[LogContext]:
        for name, val in self._fields.items():
            var = _context[name]
            self._tokens.append((var, var.set(str(val))))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


# ---------------------------------------------------------------------------
# JSON lines
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else on a record came from extra=.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    return repr(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    """Type, message, error code/kind and the structured attributes of an EInvoiceError."""
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    for name in ("code", "kind"):
        if hasattr(exc, name):
            fields[f"exc_{name}"] = getattr(exc, name)
    for name, val in vars(exc).items():
        if not name.startswith("_") and name not in ("args", "code", "kind"):
            fields[f"exc_{name}"] = val
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, message, context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, val in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, val)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_jsonable)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

ROOT_LOGGER_NAME = "einvoice"

_setup_lock = threading.Lock()
_handler: logging.Handler | None = None


def get_logger(name: str) -> logging.Logger:
    """``get_logger("batch.worker_pool")`` -> logger ``einvoice.batch.worker_pool``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``einvoice`` logger. Later calls are no-ops."""
    global _handler
    with _setup_lock:
        if _handler is not None:
            return
        _handler = handler or logging.StreamHandler(stream or sys.stderr)
        _handler.setFormatter(StructuredFormatter())
        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(_handler)


def reset_logging() -> None:
    """Detach the handler so the next configure_logging() takes effect. Tests only."""
    global _handler
    with _setup_lock:
        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        _handler = None
