"""
Structured JSON logging for the approval kernel.

Responsibility:
    Render every record under the ``approval_kernel`` logger tree as one
    JSON line, enriched with the approval-scoped fields currently bound
    in LogContext (approval id, acting principal, matched policy, trace).

Architecture position:
    Kernel infrastructure. Engines and services obtain loggers through
    get_logger() and attach event data via ``extra={...}``; they never
    configure handlers themselves.

Invariants:
    - Bound context fields take precedence over ``extra`` keys of the
      same name.
    - Only the fields named in CONTEXT_FIELDS may be bound.
    - configure_logging() installs at most one handler until reset.

Failure modes:
    - Binding an unknown field raises TypeError at bind time.
"""

__all__ = [
    "CONTEXT_FIELDS",
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
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "approval_id",
    "actor_id",
    "policy_id",
    "trace_id",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})

_bound: ContextVar[Mapping[str, str]] = ContextVar(
    "approval_log_context", default=_EMPTY
)


def _checked(fields: Mapping[str, str | None]) -> dict[str, str]:
    unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
    if unknown:
        raise TypeError(f"Unknown log context fields: {unknown}")
    return {k: v for k, v in fields.items() if v is not None}


class LogContext:
    """Request-scoped log fields, safe across threads and asyncio tasks.

    The bound fields live in a single ContextVar holding a read-only
    mapping, so every update replaces the mapping rather than mutating it.
    """

    @staticmethod
    def set(**fields: str | None) -> None:
        """Merge non-None fields into the current context."""
        merged = {**_bound.get(), **_checked(fields)}
        _bound.set(MappingProxyType(merged))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_bound.get())

    @staticmethod
    def clear() -> None:
        _bound.set(_EMPTY)

    @staticmethod
    def bind(**fields: str | None) -> AbstractContextManager[type["LogContext"]]:
        """Overlay fields for the duration of a ``with`` block."""
        return _overlay(_checked(fields))


@contextmanager
def _overlay(fields: dict[str, str]) -> Iterator[type[LogContext]]:
    token = _bound.set(MappingProxyType({**_bound.get(), **fields}))
    try:
        yield LogContext
    finally:
        _bound.reset(token)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RESERVED: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # ApprovalKernelError subclasses keep their context as public attributes
    for name, value in vars(exc).items():
        if name != "code" and not name.startswith("_"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        extras = {
            k: v for k, v in vars(record).items() if k not in _RESERVED
        }
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **extras,
            **_bound.get(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_to_json)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_ROOT = "approval_kernel"

_configured = False
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_ROOT}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach the JSON handler to the ``approval_kernel`` tree once."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    root = logging.getLogger(_ROOT)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(target)


def reset_logging() -> None:
    """Undo configure_logging(). Test fixtures only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_ROOT)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    root.propagate = True
