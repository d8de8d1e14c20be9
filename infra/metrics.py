"""Prometheus-backed metrics hooks for the monitor loop and executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

from core.models import ExecutionOutcome

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    status: str
    circuit_breaker_level: Optional[int]
    decision: Optional[str]
    duration_seconds: float


class MetricsRecorder:
    """
    Expose control-loop stats via Prometheus.

    Each recorder owns its own CollectorRegistry, so several instances (one
    per test, say) never collide on metric registration.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = int(port)
        self._started = False
        self.registry = registry or CollectorRegistry()
        self._last_tick: Optional[TickStats] = None

        self._tick_summary = Summary(
            "rebalancer_tick_duration_seconds",
            "Duration of a full monitor loop tick",
            registry=self.registry,
        )
        self._tick_counter = Counter(
            "rebalancer_tick_total",
            "Monitor loop ticks by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._circuit_breaker_gauge = Gauge(
            "rebalancer_circuit_breaker_level",
            "Last observed circuit breaker level (0=normal, 3=emergency)",
            registry=self.registry,
        )
        self._decision_counter = Counter(
            "rebalancer_decisions_total",
            "Selected actions by kind",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._execution_counter = Counter(
            "rebalancer_executions_total",
            "Executor outcomes by status",
            labelnames=("status", "emergency"),
            registry=self.registry,
        )
        self._attempts_summary = Summary(
            "rebalancer_submission_attempts",
            "Submission attempts per executed action",
            registry=self.registry,
        )
        self._rate_limit_gauge = Gauge(
            "rebalancer_daily_rebalances",
            "Rebalances committed in the current UTC day",
            registry=self.registry,
        )
        self._rate_limit_max_gauge = Gauge(
            "rebalancer_daily_rebalances_max",
            "Configured maximum rebalances per UTC day",
            registry=self.registry,
        )
        self._consecutive_failures_gauge = Gauge(
            "rebalancer_consecutive_failures",
            "Current count of consecutive failed submissions",
            registry=self.registry,
        )
        self._heartbeat_failures_counter = Counter(
            "rebalancer_heartbeat_write_failures_total",
            "Heartbeat writes that failed",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_tick(self, stats: TickStats) -> None:
        self._tick_summary.observe(stats.duration_seconds)
        self._tick_counter.labels(status=stats.status).inc()
        if stats.circuit_breaker_level is not None:
            self._circuit_breaker_gauge.set(stats.circuit_breaker_level)
        if stats.decision is not None:
            self._decision_counter.labels(kind=stats.decision).inc()
        self._last_tick = stats

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick

    def record_execution(self, outcome: ExecutionOutcome) -> None:
        self._execution_counter.labels(
            status=outcome.status.value,
            emergency=str(outcome.emergency).lower(),
        ).inc()
        if outcome.attempts:
            self._attempts_summary.observe(outcome.attempts)

    def record_rate_limiter(self, count: int, max_per_day: int) -> None:
        self._rate_limit_gauge.set(count)
        self._rate_limit_max_gauge.set(max_per_day)

    def record_consecutive_failures(self, count: int) -> None:
        self._consecutive_failures_gauge.set(count)

    def record_heartbeat_failure(self) -> None:
        self._heartbeat_failures_counter.inc()

    def sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Current value of a sample in this recorder's registry."""
        return self.registry.get_sample_value(name, labels or {})


__all__ = ["MetricsRecorder", "TickStats"]
