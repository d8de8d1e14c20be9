"""
Collaborator contracts consumed by the control loop.

The loop never talks to a chain, a wallet service or the wall clock
directly; everything it needs is passed in at construction time so tests
can substitute fakes.
"""

import time
from datetime import datetime, timezone
from typing import Protocol

from core.models import OperationDescriptor, SubmissionReceipt, VaultState


class VaultStateReader(Protocol):
    def read(self) -> VaultState:
        """Return a fresh snapshot; raise StateReadError on any failed read."""
        ...


class CircuitBreakerReader(Protocol):
    def read_level(self) -> int:
        """Return the raw, unchecked circuit breaker value."""
        ...


class Submitter(Protocol):
    def submit(self, operation: OperationDescriptor) -> SubmissionReceipt:
        """Block until the operation is terminal; raise SubmissionError on failure."""
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class Sleeper(Protocol):
    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemSleeper:
    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
