"""
vault-rebalancer Runner: Monitor Loop

Observe -> decide -> act, once per interval.

Flow per tick:
1. Read the circuit breaker level (highest priority)
2. EMERGENCY: redeem the entire strategy balance, bypassing scoring and
   the daily limit
3. Otherwise: read vault state, score candidates, execute the selection
4. Write the liveness heartbeat
5. Any exception is logged at the tick boundary; the loop never dies

Shutdown is cooperative: SIGINT/SIGTERM are observed at the top of the
loop, after the in-flight tick (including executor retries) finishes.
"""

import logging
import math
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from core.audit_log import AuditLogger
from core.circuit_breaker import CircuitBreakerGate
from core.decision_engine import DecisionEngine, DecisionParams, select_best_action
from core.exceptions import ConfigValidationError
from core.execution import RebalanceExecutor, RetryPolicy, VaultOperationBuilder, REBALANCE_FUNCTION
from core.interfaces import Clock, Sleeper, SystemClock, SystemSleeper, VaultStateReader
from core.models import (
    ActionKind,
    CircuitBreakerLevel,
    ExecutionOutcome,
    ScoredAction,
    VaultState,
)
from core.rate_limiter import DailyRateLimiter
from infra.alerting import AlertService
from infra.healthcheck import HealthServer
from infra.heartbeat import HeartbeatWriter
from infra.metrics import MetricsRecorder, TickStats
from infra.rpc_client import (
    JsonRpcCircuitBreakerReader,
    JsonRpcClient,
    JsonRpcVaultReader,
    VaultContracts,
)
from infra.submitter import CallWhitelist, DryRunSubmitter, HttpSubmitter
from tools.config_validator import AgentConfig, load_agent_config

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class TickResult:
    status: str  # ok | emergency | error
    started_at: datetime
    duration_seconds: float
    circuit_breaker_level: Optional[CircuitBreakerLevel] = None
    state: Optional[VaultState] = None
    ranked: Optional[List[ScoredAction]] = None
    selected: Optional[ScoredAction] = None
    outcome: Optional[ExecutionOutcome] = None
    heartbeat_written: bool = False
    error: Optional[str] = None


def emergency_redeem_action(state: VaultState) -> ScoredAction:
    return ScoredAction(
        kind=ActionKind.REDEEM_TO_RESERVE,
        utility=math.inf,
        amount=state.strategy_balance,
        rationale="Emergency circuit breaker: redeem entire strategy balance",
    )


class MonitorLoop:
    """
    The rebalancing control loop.

    Responsibilities:
    - Own the tick cadence and the RUNNING -> SHUTTING_DOWN -> STOPPED states
    - Route emergency levels around the decision engine
    - Keep every failure inside the tick boundary
    - Emit heartbeat, metrics and audit records
    """

    def __init__(self,
                 gate: CircuitBreakerGate,
                 vault_reader: VaultStateReader,
                 decision_engine: DecisionEngine,
                 executor: RebalanceExecutor,
                 heartbeat: HeartbeatWriter,
                 interval_seconds: float,
                 sleeper: Optional[Sleeper] = None,
                 clock: Optional[Clock] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None,
                 alert_service: Optional[AlertService] = None,
                 mode: str = "DRY_RUN",
                 closeables: Iterable[Any] = ()):
        self.gate = gate
        self.vault_reader = vault_reader
        self.decision_engine = decision_engine
        self.executor = executor
        self.heartbeat = heartbeat
        self.interval_seconds = float(interval_seconds)
        self.sleeper = sleeper or SystemSleeper()
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.audit = audit
        self.alert_service = alert_service
        self.mode = mode
        # Owned network clients (RPC, signer); closed when the loop stops
        self.closeables: List[Any] = list(closeables)

        self._state = LoopState.RUNNING
        self._previous_handlers: Dict[int, Any] = {}
        self._last_tick: Optional[TickResult] = None
        self.health_server: Optional[HealthServer] = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def last_tick(self) -> Optional[TickResult]:
        return self._last_tick

    # ----- shutdown -----

    def request_shutdown(self, *_) -> None:
        """Stop after the current tick. Safe to call any number of times."""
        if self._state is not LoopState.RUNNING:
            return
        self._state = LoopState.SHUTTING_DOWN
        logger.warning("Shutdown requested; stopping after the current tick")

    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[signum] = signal.signal(signum, self.request_shutdown)
            except ValueError:
                # Not on the main thread
                logger.debug("Cannot install handler for signal %s outside main thread", signum)

    def restore_signal_handlers(self) -> None:
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            try:
                signal.signal(signum, handler)
            except (ValueError, TypeError) as exc:
                logger.debug("Failed to restore handler for signal %s: %s", signum, exc)

    # ----- tick -----

    def run_tick(self) -> TickResult:
        started_at = self.clock.now()
        start = time.monotonic()
        result = TickResult(status="ok", started_at=started_at, duration_seconds=0.0)

        try:
            result.circuit_breaker_level = self.gate.read_level()

            if self.gate.is_emergency(result.circuit_breaker_level):
                result.status = "emergency"
                self._run_emergency(result)
            else:
                self._run_normal(result)

            result.heartbeat_written = self._write_heartbeat()
        except Exception as exc:
            result.status = "error"
            result.error = f"{type(exc).__name__}: {exc}"
            logger.error("Monitor tick failed: %s", exc, exc_info=True)

        result.duration_seconds = time.monotonic() - start
        self._last_tick = result
        self._record_tick(result)
        return result

    def _run_emergency(self, result: TickResult) -> None:
        logger.warning("🚨 Emergency response triggered (circuit breaker level=%d)", result.circuit_breaker_level)
        try:
            state = self.vault_reader.read()
            result.state = state
            if state.strategy_balance <= 0:
                logger.warning("Emergency: strategy balance is zero, nothing to redeem")
                return

            action = emergency_redeem_action(state)
            result.selected = action
            result.outcome = self.executor.execute(action, emergency=True)
        finally:
            self._send_emergency_alert(result.circuit_breaker_level)

    def _send_emergency_alert(self, level: CircuitBreakerLevel) -> None:
        # Runs after the redeem; delivery problems never reach the tick
        if self.alert_service is None:
            return
        try:
            self.alert_service.emergency_response(level)
        except Exception as exc:
            logger.error("Emergency alert failed: %s", exc)

    def _run_normal(self, result: TickResult) -> None:
        state = self.vault_reader.read()
        result.state = state

        ranked = self.decision_engine.rank(state)
        result.ranked = ranked
        selected = select_best_action(ranked, self.decision_engine.params.min_utility_threshold)
        result.selected = selected

        if not selected.is_do_nothing:
            result.outcome = self.executor.execute(selected, emergency=False)

    def _write_heartbeat(self) -> bool:
        try:
            self.heartbeat.write(self.clock.now())
            return True
        except Exception as exc:
            logger.warning("Heartbeat write failed (non-critical): %s", exc)
            if self.metrics is not None:
                self.metrics.record_heartbeat_failure()
            return False

    def _record_tick(self, result: TickResult) -> None:
        try:
            if self.metrics is not None:
                self.metrics.observe_tick(TickStats(
                    status=result.status,
                    circuit_breaker_level=int(result.circuit_breaker_level)
                    if result.circuit_breaker_level is not None else None,
                    decision=result.selected.kind.value if result.selected else None,
                    duration_seconds=result.duration_seconds,
                ))
            if self.audit is not None:
                self.audit.log_tick(
                    ts=result.started_at,
                    mode=self.mode,
                    status=result.status,
                    circuit_breaker_level=int(result.circuit_breaker_level)
                    if result.circuit_breaker_level is not None else None,
                    state=result.state,
                    ranked=result.ranked,
                    selected=result.selected,
                    outcome=result.outcome,
                    error=result.error,
                    duration_seconds=result.duration_seconds,
                )
        except Exception as exc:
            logger.warning("Failed to record tick telemetry: %s", exc)

    # ----- loop -----

    def run_forever(self, max_ticks: Optional[int] = None, handle_signals: bool = True) -> None:
        """
        Run ticks until shutdown is requested (or max_ticks have run).

        Sleeps the full interval between ticks.
        """
        logger.info(f"Starting monitor loop (interval={self.interval_seconds}s, mode={self.mode})")
        if handle_signals:
            self.install_signal_handlers()

        ticks = 0
        try:
            while self._state is LoopState.RUNNING:
                self.run_tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                if self._state is LoopState.RUNNING:
                    self.sleeper.sleep(self.interval_seconds)
        finally:
            self._state = LoopState.STOPPED
            self.restore_signal_handlers()
            self.stop_health_server()
            self.close_resources()
            logger.info("Monitor loop stopped cleanly after %d tick(s).", ticks)

    # ----- health -----

    def start_health_server(self, port: int, stale_after_seconds: Optional[float] = None) -> None:
        if self.health_server is not None:
            return
        server = HealthServer(port, self.status_snapshot, stale_after_seconds=stale_after_seconds)
        try:
            server.start()
        except OSError as exc:
            logger.error("Failed to start health server on port %s: %s", port, exc)
            return
        self.health_server = server

    def stop_health_server(self) -> None:
        server = self.health_server
        if server is None:
            return
        try:
            server.stop()
        finally:
            self.health_server = None

    def close_resources(self) -> None:
        while self.closeables:
            resource = self.closeables.pop()
            try:
                resource.close()
            except Exception as exc:
                logger.warning("Failed to close %s: %s", type(resource).__name__, exc)

    def status_snapshot(self) -> Dict[str, Any]:
        now = self.clock.now()
        tick = self._last_tick
        limiter = self.executor.rate_limiter

        issues = []
        if self._state is not LoopState.RUNNING:
            issues.append(f"loop_{self._state.value}")
        if tick is not None and tick.status == "error":
            issues.append("last_tick_error")
        if self.executor.consecutive_failures > self.executor.consecutive_failure_warning:
            issues.append("excessive_consecutive_failures")

        return {
            "timestamp": now.isoformat(),
            "mode": self.mode,
            "state": self._state.value,
            "last_tick": {
                "status": tick.status,
                "started_at": tick.started_at.isoformat(),
                "duration_seconds": tick.duration_seconds,
                "circuit_breaker_level": int(tick.circuit_breaker_level)
                if tick.circuit_breaker_level is not None else None,
                "selected": tick.selected.kind.value if tick.selected else None,
                "error": tick.error,
            } if tick else None,
            "heartbeat_age_seconds": self.heartbeat.age_seconds(now),
            "rate_limiter": {
                "count": limiter.current_count(),
                "max_per_day": limiter.max_per_day,
                "next_window_start": limiter.next_window_start().isoformat(),
            },
            "consecutive_failures": self.executor.consecutive_failures,
            "issues": issues,
            "ok": not issues,
        }


def configure_logging(config: AgentConfig) -> None:
    log_cfg = config.app.logging
    log_path = Path(log_cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_cfg.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def build_monitor_loop(config: AgentConfig,
                       clock: Optional[Clock] = None,
                       sleeper: Optional[Sleeper] = None) -> MonitorLoop:
    """Wire every component from validated configuration."""
    app_cfg = config.app
    policy = config.policy
    clock = clock or SystemClock()
    sleeper = sleeper or SystemSleeper()

    monitoring = app_cfg.monitoring
    metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
    metrics.start()

    alerts = AlertService.from_config(monitoring.alerts_enabled, monitoring.alerts)
    if alerts.is_enabled():
        logger.info("Alerting enabled (min_severity=%s)", monitoring.alerts.get("min_severity", "warning"))

    contracts_cfg = app_cfg.contracts
    contracts = VaultContracts(
        vault_address=contracts_cfg.vault_address,
        reserve_token_address=contracts_cfg.reserve_token_address,
        strategy_token_address=contracts_cfg.strategy_token_address,
        lending_pool_address=contracts_cfg.lending_pool_address,
        total_lent_selector=contracts_cfg.selectors.total_lent,
        total_borrowed_selector=contracts_cfg.selectors.total_borrowed,
        circuit_breaker_selector=contracts_cfg.selectors.circuit_breaker_level,
        total_assets_selector=contracts_cfg.selectors.total_assets,
    )
    rpc = JsonRpcClient(app_cfg.rpc.url, timeout=app_cfg.rpc.timeout_seconds)

    decision_cfg = policy.decision
    params = DecisionParams(
        buffer_fraction=decision_cfg.buffer_fraction,
        protocol_fee=decision_cfg.protocol_fee,
        holding_horizon_years=decision_cfg.holding_horizon_days / 365,
        risk_factor=decision_cfg.risk_factor,
        early_redeem_probability=decision_cfg.early_redeem_probability,
        fixed_gas_cost=decision_cfg.fixed_gas_cost,
        urgency_scale=decision_cfg.urgency_scale,
        asset_decimals=decision_cfg.asset_decimals,
        min_utility_threshold=decision_cfg.min_utility_threshold,
    )

    if app_cfg.app.mode == "LIVE":
        signer_cfg = app_cfg.signer
        submitter = HttpSubmitter(
            base_url=signer_cfg.url,
            api_key=signer_cfg.api_key,
            wallet_id=signer_cfg.wallet_id,
            whitelist=CallWhitelist([(contracts.vault_address, REBALANCE_FUNCTION)]),
            request_timeout=signer_cfg.request_timeout_seconds,
            settle_timeout=signer_cfg.settle_timeout_seconds,
            poll_interval=signer_cfg.poll_interval_seconds,
            sleeper=sleeper,
        )
    else:
        submitter = DryRunSubmitter()

    rate_limiter = DailyRateLimiter(policy.rate_limit.max_rebalances_per_day, clock=clock)
    executor = RebalanceExecutor(
        submitter=submitter,
        rate_limiter=rate_limiter,
        operation_builder=VaultOperationBuilder(contracts.vault_address),
        retry_policy=RetryPolicy(
            max_attempts=policy.execution.max_attempts,
            base_delay_seconds=policy.execution.base_delay_ms / 1000.0,
        ),
        sleeper=sleeper,
        consecutive_failure_warning=policy.execution.consecutive_failure_warning,
        metrics=metrics,
        alert_service=alerts,
    )

    audit_file = app_cfg.logging.audit_file or app_cfg.logging.file.replace(".log", "_audit.jsonl")

    loop = MonitorLoop(
        gate=CircuitBreakerGate(JsonRpcCircuitBreakerReader(rpc, contracts)),
        vault_reader=JsonRpcVaultReader(rpc, contracts, decision_cfg.strategy_yield_rate,
                                        clock=clock.now),
        decision_engine=DecisionEngine(params),
        executor=executor,
        heartbeat=HeartbeatWriter(app_cfg.heartbeat.path),
        interval_seconds=app_cfg.loop.interval_ms / 1000.0,
        sleeper=sleeper,
        clock=clock,
        metrics=metrics,
        audit=AuditLogger(audit_file=audit_file),
        alert_service=alerts,
        mode=app_cfg.app.mode,
        closeables=[rpc, submitter] if isinstance(submitter, HttpSubmitter) else [rpc],
    )

    if monitoring.healthcheck_enabled:
        loop.start_health_server(monitoring.healthcheck_port, app_cfg.heartbeat.stale_after_seconds)

    logger.info(
        "Initialized MonitorLoop in %s mode (interval=%.1fs, max_rebalances_per_day=%d)",
        app_cfg.app.mode, loop.interval_seconds, rate_limiter.max_per_day,
    )
    return loop


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="vault-rebalancer monitor loop")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop after N ticks")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    try:
        config = load_agent_config(args.config_dir)
    except ConfigValidationError as exc:
        logging.basicConfig(level=logging.ERROR, format="%(levelname)s: %(message)s")
        logger.error("=" * 80)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 80)
        for idx, error in enumerate(exc.errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        return 1

    configure_logging(config)
    logger.info("Starting vault-rebalancer at %s", datetime.now(timezone.utc).isoformat())

    loop = build_monitor_loop(config)
    if args.once:
        loop.run_tick()
        loop.stop_health_server()
    else:
        loop.run_forever(max_ticks=args.max_ticks)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
