"""
Structured JSON logging for the lending kernel.

Every record is one JSON line.  Fields bound with ``LogContext`` (the loan
being worked on, the inbound event, the actor) are stamped onto every
record emitted inside the binding, so a single loan's history can be
pulled out of the log stream by ``loan_id`` alone.

``extra`` keys must not collide with ``logging.LogRecord`` attributes
(``created``, ``module``, ``name``, ...); the stdlib raises ``KeyError`` for
those.  ``RESERVED_RECORD_KEYS`` lists them.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "RESERVED_RECORD_KEYS",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

_LOGGER_PREFIX = "lending_kernel"


# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """
    Per-thread (and per-task) fields stamped onto every log record.

    The bound fields live in one ContextVar holding an immutable snapshot;
    each ``set`` or ``bind`` replaces the snapshot, so worker threads never
    see each other's loan.
    """

    FIELDS: tuple[str, ...] = (
        "correlation_id",
        "loan_id",
        "event_type",
        "actor",
        "trace_id",
    )

    _fields: ContextVar[tuple[tuple[str, str], ...]] = ContextVar(
        "lending_log_context", default=()
    )

    @classmethod
    def _merged(cls, updates: dict[str, str | None]) -> tuple[tuple[str, str], ...]:
        current = dict(cls._fields.get())
        for name, value in updates.items():
            if name in cls.FIELDS and value is not None:
                current[name] = value
        return tuple((name, current[name]) for name in cls.FIELDS if name in current)

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Set context fields. None values leave a field as it was."""
        unknown = set(fields) - set(cls.FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context field(s): {sorted(unknown)}")
        cls._fields.set(cls._merged(fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(cls._fields.get())

    @classmethod
    def clear(cls) -> None:
        cls._fields.set(())

    @classmethod
    @contextmanager
    def bind(cls, **fields: str | None) -> Iterator[type["LogContext"]]:
        """
        Set fields for the duration of a block, then restore the previous
        snapshot.  None values and unknown names are skipped, so callers can
        pass optional identifiers (an event without ``event_id``) unchecked.
        """
        token = cls._fields.set(cls._merged(fields))
        try:
            yield cls
        finally:
            cls._fields.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

RESERVED_RECORD_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


def _json_default(obj: Any) -> Any:
    """Serialize ledger values: ids, timestamps, money-like decimals, enums."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # LendingKernelError subclasses carry their identifiers as attributes
    for key, value in vars(exc).items():
        if not key.startswith("_") and key not in ("args", "code"):
            fields[f"exc_{key}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Bound context wins over a same-named extra
        payload.update(LogContext.get_all())
        for key, value in vars(record).items():
            if key not in RESERVED_RECORD_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the lending_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``lending_kernel`` logger.

    Idempotent: only the first call in a process takes effect, so the
    composition root can call it unconditionally.  ``level`` may be a
    level name such as ``"DEBUG"``.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.setLevel(level.upper() if isinstance(level, str) else level)
    kernel_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    kernel_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.handlers.clear()
    kernel_logger.setLevel(logging.WARNING)
