"""
vault-rebalancer Core: Data Model

Point-in-time vault snapshots, scored rebalance candidates and the small
state records owned by the rate limiter and executor.

Amounts are integers in the asset's base units (e.g. 6 decimals for USDC)
so no fractional value is ever lost between reads and submissions.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

# Fixed-point base for ratios (1e18 == 100%)
WAD = 10 ** 18


class ActionKind(str, Enum):
    MOVE_TO_STRATEGY = "move_to_strategy"
    REDEEM_TO_RESERVE = "redeem_to_reserve"
    DO_NOTHING = "do_nothing"


class CircuitBreakerLevel(IntEnum):
    """Protocol safety level reported by the vault."""
    NORMAL = 0
    CAUTION = 1
    STRESS = 2
    EMERGENCY = 3


@dataclass(frozen=True)
class VaultState:
    """
    Immutable snapshot of on-chain vault figures, read fresh every tick.

    ``idle_reserve + total_lent`` need not equal ``total_assets``: the
    strategy holds its own balance.
    """
    total_assets: int
    total_lent: int
    idle_reserve: int
    strategy_balance: int
    total_borrowed: int
    utilisation: int
    strategy_yield_rate: float
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        for name in ("total_assets", "total_lent", "idle_reserve", "strategy_balance", "total_borrowed"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if self.total_assets == 0 and self.utilisation != 0:
            # Utilisation is undefined for an empty vault
            object.__setattr__(self, "utilisation", 0)
        if not 0 <= self.utilisation <= WAD:
            raise ValueError(f"utilisation must be within [0, WAD], got {self.utilisation}")

    @staticmethod
    def compute_utilisation(total_borrowed: int, total_assets: int) -> int:
        if total_assets <= 0:
            return 0
        return min(WAD, total_borrowed * WAD // total_assets)


@dataclass(frozen=True)
class ScoredAction:
    """A rebalance candidate with its utility score."""
    kind: ActionKind
    utility: float
    amount: int
    rationale: str = ""

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"amount must be >= 0, got {self.amount}")

    @classmethod
    def do_nothing(cls, rationale: str = "Baseline action") -> "ScoredAction":
        return cls(kind=ActionKind.DO_NOTHING, utility=0.0, amount=0, rationale=rationale)

    @property
    def is_do_nothing(self) -> bool:
        return self.kind is ActionKind.DO_NOTHING


@dataclass
class RateLimiterState:
    count: int
    window_day: date


@dataclass
class ExecutorState:
    consecutive_failures: int = 0


@dataclass(frozen=True)
class OperationDescriptor:
    """Protocol call implied by a scored action, handed to the submitter."""
    target: str
    function: str
    action_kind: ActionKind
    amount: int
    idempotency_key: str
    args: tuple = ()


@dataclass(frozen=True)
class SubmissionReceipt:
    confirmation_id: str
    final_status: str
    tx_hash: Optional[str] = None


class ExecutionStatus(str, Enum):
    SUBMITTED = "submitted"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_PERMANENT = "failed_permanent"


@dataclass
class ExecutionOutcome:
    """What happened to a scored action inside the executor."""
    status: ExecutionStatus
    action: ScoredAction
    emergency: bool = False
    attempts: int = 0
    receipt: Optional[SubmissionReceipt] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is ExecutionStatus.SUBMITTED
