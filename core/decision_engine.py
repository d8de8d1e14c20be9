"""
vault-rebalancer Core: Decision Engine

Scores the three possible rebalance actions against a vault snapshot and
selects one. Pure and total: every well-formed VaultState produces a
ranking, nothing here performs I/O except logging.

Utility model (all money figures in whole asset units):
- move_to_strategy: expected net yield over the holding horizon minus the
  expected cost of unwinding early minus gas
- redeem_to_reserve: urgency of refilling the buffer minus gas
- do_nothing: 0, the baseline every other action must beat
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List

from core.models import WAD, ActionKind, ScoredAction, VaultState

logger = logging.getLogger(__name__)

# Utility assigned to candidates that must never be picked
NEVER_SELECT = -1.0


@dataclass(frozen=True)
class DecisionParams:
    """Protocol constants and thresholds used by the utility model."""
    buffer_fraction: float = 0.05
    protocol_fee: float = 0.05
    holding_horizon_years: float = 30 / 365
    risk_factor: float = 0.1
    early_redeem_probability: float = 0.2
    fixed_gas_cost: float = 0.5
    urgency_scale: float = 10.0
    asset_decimals: int = 6
    min_utility_threshold: float = 0.001

    @property
    def buffer_fraction_wad(self) -> int:
        return int(Decimal(str(self.buffer_fraction)) * WAD)

    def to_units(self, amount: int) -> float:
        return amount / 10 ** self.asset_decimals


def buffer_target(total_assets: int, params: DecisionParams) -> int:
    """Minimum idle reserve in base units, exact and monotonic in total_assets."""
    return total_assets * params.buffer_fraction_wad // WAD


def calculate_move_to_strategy(state: VaultState, params: DecisionParams) -> ScoredAction:
    target = buffer_target(state.total_assets, params)
    excess = state.idle_reserve - target if state.idle_reserve > target else 0

    if excess == 0:
        return ScoredAction(
            kind=ActionKind.MOVE_TO_STRATEGY,
            utility=NEVER_SELECT,
            amount=0,
            rationale="No excess idle reserve above buffer target",
        )

    excess_units = params.to_units(excess)
    net_rate = state.strategy_yield_rate * (1 - params.protocol_fee)
    yield_gain = net_rate * excess_units * params.holding_horizon_years
    risk_cost = params.risk_factor * params.early_redeem_probability * excess_units
    utility = yield_gain - risk_cost - params.fixed_gas_cost

    return ScoredAction(
        kind=ActionKind.MOVE_TO_STRATEGY,
        utility=utility,
        amount=excess,
        rationale=(
            f"Yield gain: {yield_gain:.4f}, Risk cost: {risk_cost:.4f}, "
            f"Gas: {params.fixed_gas_cost}"
        ),
    )


def calculate_redeem_to_reserve(state: VaultState, params: DecisionParams) -> ScoredAction:
    target = buffer_target(state.total_assets, params)

    # Also covers target == 0, so the ratio below never divides by zero
    if state.idle_reserve >= target or state.strategy_balance == 0:
        return ScoredAction(
            kind=ActionKind.REDEEM_TO_RESERVE,
            utility=NEVER_SELECT,
            amount=0,
            rationale="Idle reserve meets buffer target or nothing to redeem",
        )

    shortfall = target - state.idle_reserve
    amount = min(shortfall, state.strategy_balance)

    buffer_ratio = state.idle_reserve / target if state.idle_reserve > 0 else 0.0
    urgency = max(0.0, 1 - buffer_ratio) * params.urgency_scale
    utility = urgency - params.fixed_gas_cost

    return ScoredAction(
        kind=ActionKind.REDEEM_TO_RESERVE,
        utility=utility,
        amount=amount,
        rationale=f"Buffer ratio: {buffer_ratio * 100:.2f}%, Urgency: {urgency:.4f}",
    )


def calculate_do_nothing() -> ScoredAction:
    return ScoredAction.do_nothing()


def rank_actions(state: VaultState, params: DecisionParams) -> List[ScoredAction]:
    """All three candidates, best first. Ties keep declaration order."""
    candidates = [
        calculate_move_to_strategy(state, params),
        calculate_redeem_to_reserve(state, params),
        calculate_do_nothing(),
    ]
    return sorted(candidates, key=lambda action: action.utility, reverse=True)


def select_best_action(ranked: List[ScoredAction], min_utility_threshold: float) -> ScoredAction:
    """
    Pick the top-ranked action unless it fails to clear the threshold.

    Marginal rebalances whose expected benefit does not beat the threshold
    are replaced by do_nothing, whatever kind ranked first.
    """
    logger.info(
        "Decision evaluated: %s (threshold=%s)",
        ", ".join(f"{a.kind.value}={a.utility:.4f}/{a.amount}" for a in ranked),
        min_utility_threshold,
    )

    best = ranked[0] if ranked else None
    if best is None or best.utility <= min_utility_threshold:
        logger.info(
            "Decision: do_nothing (best utility %.4f <= threshold %s)",
            best.utility if best else 0.0,
            min_utility_threshold,
        )
        return ScoredAction.do_nothing("No action above threshold")

    logger.info(
        "Decision: %s amount=%s utility=%.4f (%s)",
        best.kind.value, best.amount, best.utility, best.rationale,
    )
    return best


class DecisionEngine:
    """Binds the scoring functions to a fixed parameter set."""

    def __init__(self, params: DecisionParams):
        self.params = params

    def rank(self, state: VaultState) -> List[ScoredAction]:
        return rank_actions(state, self.params)

    def decide(self, state: VaultState) -> ScoredAction:
        return select_best_action(self.rank(state), self.params.min_utility_threshold)
