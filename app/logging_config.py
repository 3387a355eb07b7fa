"""
Structured logging for the Sats Jar API.

Every module logs through the standard library:

    logger = logging.getLogger(__name__)

Because all modules live under the `app` package, their loggers share the
`app` parent configured here. configure_logging() is called once from the
application lifespan and attaches a single handler that writes either one
JSON object per line (production) or plain text (local development).

Context propagation:
  Settlement runs in request handlers and in webhook background tasks, often
  concurrently. LogContext stores request-scoped fields (payment_hash, via,
  account_id) in contextvars so they are attached to every record emitted
  while they are bound, without threading them through every call:

      with LogContext.bind(payment_hash=payment_hash, via="webhook"):
          logger.info("Settling invoice")
"""

import json
import logging
import sys
import threading
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any

_LOGGER_ROOT = "app"


# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Async-safe holder for fields attached to every log record."""

    _payment_hash: ContextVar[str | None] = ContextVar("log_payment_hash", default=None)
    _via: ContextVar[str | None] = ContextVar("log_via", default=None)
    _account_id: ContextVar[str | None] = ContextVar("log_account_id", default=None)

    _FIELD_NAMES = ("payment_hash", "via", "account_id")

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Return all bound (non-None) context fields."""
        ctx: dict[str, str] = {}
        for name in cls._FIELD_NAMES:
            val = getattr(cls, f"_{name}").get()
            if val is not None:
                ctx[name] = val
        return ctx

    @classmethod
    def bind(cls, **kwargs: Any) -> "_LogContextManager":
        """Context manager that sets fields on entry and restores them on exit."""
        return _LogContextManager(**kwargs)


class _LogContextManager:
    def __init__(self, **kwargs: Any):
        self._kwargs = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> type[LogContext]:
        for key, val in self._kwargs.items():
            var = getattr(LogContext, f"_{key}", None)
            if var is not None and val is not None:
                self._tokens[key] = var.set(str(val.value if isinstance(val, Enum) else val))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        for key, token in self._tokens.items():
            getattr(LogContext, f"_{key}").reset(token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else came from `extra=`
_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
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
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


class ContextTextFormatter(logging.Formatter):
    """Plain-text formatter that appends bound context fields."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = LogContext.get_all()
        if ctx:
            line += " " + " ".join(f"{k}={v}" for k, v in ctx.items())
        return line


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: str | int = logging.INFO,
    json_output: bool = True,
    handler: logging.Handler | None = None,
) -> None:
    """Configure the `app` logger hierarchy (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_ROOT)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler or logging.StreamHandler(sys.stderr)
    if json_output:
        h.setFormatter(StructuredFormatter())
    else:
        h.setFormatter(
            ContextTextFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_ROOT)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
