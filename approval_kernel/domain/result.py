"""
Tagged results (``approval_kernel.domain.result``).

Responsibility:
    Uniform success/failure value returned by every engine and use case.
    A failure carries a machine-readable ``ErrorCode``, a human message and
    optional structured details; it never carries a partially updated
    instance.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.

Failure modes:
    - ``unwrap()`` on a failure raises the typed exception for its code
      (see ``approval_kernel.exceptions.error_for``).
    - Reading ``value`` on a failure raises ``ValueError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, Mapping, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    NOT_ACTIVE_STAGE = "NOT_ACTIVE_STAGE"
    INVALID_DECISION = "INVALID_DECISION"
    INVALID_STATE = "INVALID_STATE"
    INVALID_INPUT = "INVALID_INPUT"
    POLICY_NOT_FOUND = "POLICY_NOT_FOUND"
    SAVE_FAILED = "SAVE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"


@dataclass(frozen=True)
class EngineError:
    code: ErrorCode
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))


@dataclass(frozen=True)
class EngineResult(Generic[T]):
    """Either a value (``success=True``) or an ``EngineError``."""

    success: bool
    _value: T | None = None
    error: EngineError | None = None

    def __post_init__(self) -> None:
        if self.success and self.error is not None:
            raise ValueError("A successful result cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("A failed result must carry an error")

    @classmethod
    def ok(cls, value: T = None) -> EngineResult[T]:  # type: ignore[assignment]
        return cls(success=True, _value=value)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, **details: Any) -> EngineResult[T]:
        return cls(success=False, error=EngineError(code, message, details))

    @classmethod
    def from_error(cls, error: EngineError) -> EngineResult[T]:
        """Re-tag an existing failure (e.g. propagate an engine error verbatim)."""
        return cls(success=False, error=error)

    @property
    def value(self) -> T:
        if not self.success:
            raise ValueError(
                f"Failed result has no value ({self.error.code.value}: "
                f"{self.error.message})"
            )
        return self._value  # type: ignore[return-value]

    @property
    def code(self) -> ErrorCode | None:
        return self.error.code if self.error is not None else None

    def unwrap(self) -> T:
        """Return the value or raise the typed exception for the failure."""
        if self.success:
            return self._value  # type: ignore[return-value]
        from approval_kernel.exceptions import error_for

        raise error_for(self.error)
