"""
Tests for building the monitor loop from validated configuration.
"""
import pytest

from core.models import ActionKind, ScoredAction
from infra.rpc_client import JsonRpcClient
from infra.submitter import DryRunSubmitter, HttpSubmitter
from runner.main_loop import build_monitor_loop, main
from tools.config_validator import AgentConfig, AppSchema, PolicySchema
from tests.helpers.vault_stubs import FakeClock, RecordingSleeper


def agent_config(tmp_path, mode="DRY_RUN", **policy):
    app = {
        "app": {"mode": mode},
        "logging": {"file": str(tmp_path / "agent.log"), "audit_file": str(tmp_path / "audit.jsonl")},
        "loop": {"interval_ms": 15_000},
        "heartbeat": {"path": str(tmp_path / "heartbeat")},
        "monitoring": {"metrics_enabled": False, "healthcheck_enabled": False},
        "rpc": {"url": "https://rpc.example.org"},
        "contracts": {
            "vault_address": "0x" + "1" * 40,
            "reserve_token_address": "0x" + "2" * 40,
            "strategy_token_address": "0x" + "3" * 40,
            "lending_pool_address": "0x" + "4" * 40,
            "selectors": {
                "total_lent": "0xaaaaaaaa",
                "total_borrowed": "0xbbbbbbbb",
                "circuit_breaker_level": "0xcccccccc",
            },
        },
    }
    if mode == "LIVE":
        app["signer"] = {"url": "https://signer.local", "api_key": "k", "wallet_id": "w"}
    return AgentConfig(app=AppSchema(**app), policy=PolicySchema(**policy))


def test_dry_run_wiring(tmp_path):
    loop = build_monitor_loop(agent_config(tmp_path), clock=FakeClock(), sleeper=RecordingSleeper())

    assert loop.mode == "DRY_RUN"
    assert loop.interval_seconds == 15.0
    assert isinstance(loop.executor.submitter, DryRunSubmitter)
    assert loop.executor.rate_limiter.max_per_day == 3
    assert loop.executor.retry_policy.base_delay_seconds == 1.0
    assert loop.health_server is None


def test_policy_values_flow_through(tmp_path):
    config = agent_config(
        tmp_path,
        decision={"buffer_fraction": 0.1, "holding_horizon_days": 365, "asset_decimals": 0},
        rate_limit={"max_rebalances_per_day": 5},
        execution={"max_attempts": 4, "base_delay_ms": 250},
    )

    loop = build_monitor_loop(config, clock=FakeClock(), sleeper=RecordingSleeper())

    params = loop.decision_engine.params
    assert params.buffer_fraction == 0.1
    assert params.holding_horizon_years == 1.0
    assert loop.executor.rate_limiter.max_per_day == 5
    assert loop.executor.retry_policy.max_attempts == 4
    assert loop.executor.retry_policy.base_delay_seconds == 0.25


def test_live_uses_http_submitter_with_vault_whitelist(tmp_path):
    loop = build_monitor_loop(agent_config(tmp_path, mode="LIVE"), clock=FakeClock(), sleeper=RecordingSleeper())

    submitter = loop.executor.submitter
    assert isinstance(submitter, HttpSubmitter)
    assert submitter.wallet_id == "w"
    op = loop.executor.operation_builder.build(
        ScoredAction(kind=ActionKind.MOVE_TO_STRATEGY, utility=1.0, amount=1)
    )
    assert submitter.whitelist.is_allowed(op)


def test_main_exits_nonzero_on_invalid_config(tmp_path):
    assert main(["--once", "--config-dir", str(tmp_path)]) == 1


def test_network_clients_registered_for_close(tmp_path):
    dry = build_monitor_loop(agent_config(tmp_path), clock=FakeClock(), sleeper=RecordingSleeper())
    live = build_monitor_loop(agent_config(tmp_path, mode="LIVE"), clock=FakeClock(), sleeper=RecordingSleeper())

    assert [type(c) for c in dry.closeables] == [JsonRpcClient]
    assert live.executor.submitter in live.closeables
    assert len(live.closeables) == 2
