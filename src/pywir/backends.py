"""Capability interfaces implemented by each host backend."""

import time
from typing import Protocol

from pywir.errors import DeadlineExceeded
from pywir.models import ConnectionInfo, EnvironmentSet, ProcessInfo


class Deadline:
    """
    Point in time after which a long scan should give up.

    Uses the monotonic clock, so wall clock adjustments don't affect it.
    """

    def __init__(self, timeout: float | None) -> None:
        """
        Initialize the Deadline.

        Args:
            timeout: Seconds from now, or None for no limit.
        """
        self._timeout = timeout
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    @classmethod
    def never(cls) -> "Deadline":
        """A deadline that never expires."""
        return cls(None)

    @property
    def expired(self) -> bool:
        """Whether the deadline has passed."""
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> float | None:
        """Seconds left, clamped at zero, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self) -> None:
        """Raise DeadlineExceeded if the deadline has passed."""
        if self.expired:
            raise DeadlineExceeded(f"scan exceeded its {self._timeout:g}s deadline")


class ProcessInfoProvider(Protocol):
    def get(self, pid: int) -> ProcessInfo: ...


class ProcessEnumerator(Protocol):
    def list_all(self) -> list[ProcessInfo]: ...


class EnvironmentReader(Protocol):
    def read(self, pid: int) -> EnvironmentSet: ...


class ConnectionResolver(Protocol):
    def resolve(
        self, port: int, deadline: Deadline | None = None
    ) -> list[ConnectionInfo]: ...
