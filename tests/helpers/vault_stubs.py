"""
Test helpers for control loop tests.

Deterministic stand-ins for the clock, sleeper, chain readers and signing
service. Use these instead of Mock() where a test needs to script a
sequence of results or inspect what was requested.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Union

from core.models import OperationDescriptor, SubmissionReceipt, VaultState


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingSleeper:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls: List[float] = []

    def sleep(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_state(
    total_assets: int = 1_000_000,
    idle_reserve: int = 50_000,
    strategy_balance: int = 0,
    total_lent: int = 0,
    total_borrowed: int = 0,
    strategy_yield_rate: float = 0.045,
    observed_at: Optional[datetime] = None,
) -> VaultState:
    """
    Factory for vault snapshots.

    Example:
        >>> surplus = make_state(total_assets=1_000_000, idle_reserve=100_000)
        >>> starved = make_state(idle_reserve=0, strategy_balance=20_000)
    """
    return VaultState(
        total_assets=total_assets,
        total_lent=total_lent,
        idle_reserve=idle_reserve,
        strategy_balance=strategy_balance,
        total_borrowed=total_borrowed,
        utilisation=VaultState.compute_utilisation(total_borrowed, total_assets),
        strategy_yield_rate=strategy_yield_rate,
        observed_at=observed_at or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
    )


Scripted = Union[SubmissionReceipt, BaseException]


@dataclass
class ScriptedSubmitter:
    """Returns (or raises) scripted results in order; repeats the last one."""
    script: Sequence[Scripted] = field(default_factory=list)
    operations: List[OperationDescriptor] = field(default_factory=list)

    def submit(self, operation: OperationDescriptor) -> SubmissionReceipt:
        self.operations.append(operation)
        index = min(len(self.operations), len(self.script)) - 1
        result = self.script[index] if self.script else receipt()
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def calls(self) -> int:
        return len(self.operations)


def receipt(confirmation_id: str = "tx-1", tx_hash: Optional[str] = "0xabc") -> SubmissionReceipt:
    return SubmissionReceipt(confirmation_id=confirmation_id, final_status="COMPLETE", tx_hash=tx_hash)


class StaticVaultReader:
    """Returns the same snapshot, or raises, on every read."""

    def __init__(self, state: Optional[VaultState] = None, error: Optional[BaseException] = None):
        self.state = state
        self.error = error
        self.reads = 0

    def read(self) -> VaultState:
        self.reads += 1
        if self.error is not None:
            raise self.error
        return self.state


class StaticLevelReader:
    def __init__(self, level=0, error: Optional[BaseException] = None):
        self.level = level
        self.error = error

    def read_level(self):
        if self.error is not None:
            raise self.error
        return self.level
