"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock interface so that engine and service code
    never calls ``datetime.now()`` directly.  Every vote timestamp, stage
    activation and expiry decision is taken against an injected Clock.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).

Failure modes:
    - DeterministicClock.set_time rejects naive datetimes with ValueError.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        Services that need the current time receive a Clock via constructor
        injection.  Pure engines receive ``now`` as an argument instead.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until
          ``advance()`` or ``set_time()`` is called.
        - ``tick()`` advances by exactly 1 second and returns the new time.
    """

    DEFAULT_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = self.DEFAULT_TIME
        self._offset = timedelta(0)
        if fixed_time is not None:
            self.set_time(fixed_time)

    def now(self) -> datetime:
        return self._fixed_time + self._offset

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific (timezone-aware) time."""
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        self._fixed_time = time.astimezone(UTC)
        self._offset = timedelta(0)

    def advance(self, seconds: float | None = None, **delta: float) -> datetime:
        """Advance the clock and return the new time.

        Extra keyword arguments are forwarded to ``timedelta`` so tests can
        write ``clock.advance(days=3)``.  With no arguments, advances 1 second.
        """
        if seconds is None and not delta:
            seconds = 1
        self._offset += timedelta(seconds=seconds or 0, **delta)
        return self.now()

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        return self.advance(1)
