"""
Tests for the Decision Engine

Validates utility scoring, ranking order, the never-select sentinel and
threshold-based selection.
"""
import pytest

from core.decision_engine import (
    NEVER_SELECT,
    DecisionEngine,
    DecisionParams,
    buffer_target,
    calculate_move_to_strategy,
    calculate_redeem_to_reserve,
    rank_actions,
    select_best_action,
)
from core.models import WAD, ActionKind, ScoredAction
from tests.helpers.vault_stubs import make_state


@pytest.fixture
def params():
    """Whole-unit amounts so expected utilities are easy to compute"""
    return DecisionParams(asset_decimals=0)


class TestBufferTarget:
    def test_buffer_fraction_is_exact_wad(self, params):
        assert params.buffer_fraction_wad == 5 * 10 ** 16

    def test_five_percent_of_assets(self, params):
        assert buffer_target(1_000_000, params) == 50_000

    def test_large_amounts_stay_exact(self, params):
        """No float rounding on 30-digit balances"""
        assert buffer_target(10 ** 30, params) == 5 * 10 ** 28

    def test_monotonic_in_total_assets(self, params):
        targets = [buffer_target(total, params) for total in range(0, 2_000, 7)]
        assert targets == sorted(targets)

    def test_zero_assets(self, params):
        assert buffer_target(0, params) == 0


class TestMoveToStrategy:
    def test_no_excess_is_never_selected(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=50_000)
        action = calculate_move_to_strategy(state, params)

        assert action.utility == NEVER_SELECT
        assert action.amount == 0

    def test_amount_is_excess_over_target(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=80_000)
        action = calculate_move_to_strategy(state, params)

        assert action.kind is ActionKind.MOVE_TO_STRATEGY
        assert action.amount == 30_000

    def test_utility_formula(self):
        params = DecisionParams(asset_decimals=0, protocol_fee=0.10)
        state = make_state(total_assets=1_000_000, idle_reserve=100_000, strategy_yield_rate=0.045)

        action = calculate_move_to_strategy(state, params)

        yield_gain = 0.045 * 0.9 * 50_000 * (30 / 365)
        risk_cost = 0.1 * 0.2 * 50_000
        assert action.utility == pytest.approx(yield_gain - risk_cost - 0.5)
        assert action.utility == pytest.approx(-834.06, abs=0.01)

    def test_decimals_scale_amounts_to_units(self):
        """Same vault in 6-decimal base units scores like the whole-unit one"""
        whole = calculate_move_to_strategy(
            make_state(total_assets=1_000_000, idle_reserve=100_000),
            DecisionParams(asset_decimals=0),
        )
        scaled = calculate_move_to_strategy(
            make_state(total_assets=1_000_000 * 10 ** 6, idle_reserve=100_000 * 10 ** 6),
            DecisionParams(asset_decimals=6),
        )

        assert scaled.amount == whole.amount * 10 ** 6
        assert scaled.utility == pytest.approx(whole.utility)


class TestRedeemToReserve:
    def test_buffer_met_is_never_selected(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=60_000, strategy_balance=10_000)
        assert calculate_redeem_to_reserve(state, params).utility == NEVER_SELECT

    def test_empty_strategy_is_never_selected(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=0, strategy_balance=0)
        action = calculate_redeem_to_reserve(state, params)

        assert action.utility == NEVER_SELECT
        assert action.amount == 0

    def test_amount_capped_by_strategy_balance(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=0, strategy_balance=20_000)
        action = calculate_redeem_to_reserve(state, params)

        assert action.amount == 20_000
        assert action.utility == pytest.approx(9.5)

    def test_amount_is_shortfall_when_strategy_covers_it(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=40_000, strategy_balance=500_000)
        action = calculate_redeem_to_reserve(state, params)

        assert action.amount == 10_000
        # ratio 0.8 -> urgency 2.0
        assert action.utility == pytest.approx(1.5)

    def test_amounts_never_negative(self, params):
        for idle in (0, 10_000, 49_999, 50_000, 200_000):
            state = make_state(total_assets=1_000_000, idle_reserve=idle, strategy_balance=5_000)
            for action in rank_actions(state, params):
                assert action.amount >= 0


class TestRanking:
    def test_ranked_descending(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=0, strategy_balance=20_000)
        ranked = rank_actions(state, params)

        assert [a.kind for a in ranked] == [
            ActionKind.REDEEM_TO_RESERVE,
            ActionKind.DO_NOTHING,
            ActionKind.MOVE_TO_STRATEGY,
        ]
        utilities = [a.utility for a in ranked]
        assert utilities == sorted(utilities, reverse=True)

    def test_always_three_candidates(self, params):
        ranked = rank_actions(make_state(), params)
        assert sorted(a.kind.value for a in ranked) == sorted(k.value for k in ActionKind)

    def test_ties_keep_declaration_order(self, params):
        """Both sentinels tie at -1; move_to_strategy is declared first"""
        ranked = rank_actions(make_state(total_assets=0, idle_reserve=0), params)

        assert [a.kind for a in ranked] == [
            ActionKind.DO_NOTHING,
            ActionKind.MOVE_TO_STRATEGY,
            ActionKind.REDEEM_TO_RESERVE,
        ]

    def test_empty_vault_does_nothing(self, params):
        state = make_state(total_assets=0, idle_reserve=0, strategy_balance=0)
        best = select_best_action(rank_actions(state, params), params.min_utility_threshold)
        assert best.is_do_nothing


class TestSelection:
    def test_utility_equal_to_threshold_does_nothing(self):
        ranked = [ScoredAction(kind=ActionKind.MOVE_TO_STRATEGY, utility=0.001, amount=10)]
        assert select_best_action(ranked, 0.001).is_do_nothing

    def test_utility_above_threshold_selected(self):
        move = ScoredAction(kind=ActionKind.MOVE_TO_STRATEGY, utility=0.002, amount=10)
        assert select_best_action([move], 0.001) is move

    def test_empty_ranking_does_nothing(self):
        assert select_best_action([], 0.001).is_do_nothing

    def test_high_threshold_suppresses_redeem(self, params):
        state = make_state(total_assets=1_000_000, idle_reserve=0, strategy_balance=20_000)
        assert select_best_action(rank_actions(state, params), 100.0).is_do_nothing


class TestScenarios:
    def test_surplus_with_unprofitable_move_does_nothing(self):
        """10% idle, 5% target: yield does not cover early-redeem risk"""
        engine = DecisionEngine(DecisionParams(asset_decimals=0, protocol_fee=0.10))
        state = make_state(total_assets=1_000_000, idle_reserve=100_000, strategy_balance=0)

        ranked = engine.rank(state)
        move = next(a for a in ranked if a.kind is ActionKind.MOVE_TO_STRATEGY)

        assert move.amount == 50_000
        assert move.utility < 0
        assert engine.decide(state).is_do_nothing

    def test_starved_buffer_redeems(self, params):
        engine = DecisionEngine(params)
        state = make_state(total_assets=1_000_000, idle_reserve=0, strategy_balance=20_000)

        action = engine.decide(state)

        assert action.kind is ActionKind.REDEEM_TO_RESERVE
        assert action.amount == 20_000
        assert action.utility == pytest.approx(9.5)

    def test_profitable_move_selected_without_risk(self):
        engine = DecisionEngine(DecisionParams(asset_decimals=0, risk_factor=0.0))
        state = make_state(total_assets=1_000_000, idle_reserve=100_000)

        action = engine.decide(state)

        assert action.kind is ActionKind.MOVE_TO_STRATEGY
        assert action.amount == 50_000
        assert action.utility > 0

    def test_utilisation_capped_at_wad(self):
        state = make_state(total_assets=100, total_borrowed=500)
        assert state.utilisation == WAD
