"""Structured JSON logging for the hierarchy kernel."""

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
from contextvars import ContextVar
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = (
    "correlation_id",
    "actor_id",
    "request_id",
    "visit_id",
    "trace_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"log_{name}", default=None) for name in _CONTEXT_FIELDS
}


class LogContext:
    """Thread-safe / async-safe holder for operation-scoped log fields."""

    FIELD_NAMES = _CONTEXT_FIELDS

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Set context fields. None values and unknown names are ignored."""
        for name, value in fields.items():
            var = _context_vars.get(name)
            if var is not None and value is not None:
                var.set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Return all non-None context fields as a dict."""
        ctx: dict[str, str] = {}
        for name, var in _context_vars.items():
            value = var.get()
            if value is not None:
                ctx[name] = value
        return ctx

    @classmethod
    def clear(cls) -> None:
        for var in _context_vars.values():
            var.set(None)

    @classmethod
    def bind(cls, **fields: Any) -> "_BoundContext":
        """Context manager that sets fields on entry and restores on exit."""
        return _BoundContext(fields)


class _BoundContext:
    def __init__(self, fields: dict[str, Any]):
        self._fields = fields
        self._tokens: list[tuple[ContextVar, Any]] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            var = _context_vars.get(name)
            if var is not None and value is not None:
                self._tokens.append((var, var.set(str(value))))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


class _JSONEncoder(json.JSONEncoder):
    """Handle UUID, datetime, Enum, sets in log payloads."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset, tuple)):
            return list(obj)
        return super().default(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        payload.update(LogContext.get_all())

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            if hasattr(exc, "code"):
                payload["exc_code"] = exc.code
            # Structured attributes of HierarchyKernelError subclasses
            for k, v in vars(exc).items():
                if not k.startswith("_") and k not in ("args", "code", "message"):
                    payload[f"exc_{k}"] = v
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, cls=_JSONEncoder, default=str)


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "hierarchy_kernel"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the hierarchy_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Configure the hierarchy_kernel logger hierarchy (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
    logger.propagate = True
