"""
Webhook alerts raised by the monitor loop.

Two conditions page an operator:
- the circuit breaker reports EMERGENCY (CRITICAL)
- consecutive failed submissions pass the warning threshold (WARNING)

Delivery is best effort. A webhook outage is logged and never propagates
into the tick.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(IntEnum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, value: Optional[str], default: "AlertSeverity" = None) -> "AlertSeverity":
        fallback = default or cls.WARNING
        if not value:
            return fallback
        return cls.__members__.get(value.strip().upper(), fallback)


@dataclass(frozen=True)
class Alert:
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def fingerprint(self) -> str:
        # Context and timestamp excluded: a repeat of the same condition dedupes
        content = f"{self.severity.name}|{self.title}|{self.message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def to_payload(self) -> Dict[str, Any]:
        text = f"[{self.severity.name}] {self.title} | {self.message}"
        if self.context:
            text += f" | context={json.dumps(self.context, sort_keys=True, default=str)}"
        return {
            "text": text,
            "severity": self.severity.name.lower(),
            "title": self.title,
            "message": self.message,
            "context": self.context,
            "raised_at": self.raised_at.isoformat(),
        }


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


class AlertService:
    """
    Filters, dedupes and delivers alerts.

    An alert identical to one sent less than ``dedupe_seconds`` ago is
    dropped, so a loop stuck in the same failure pages once per window
    rather than once per tick.
    """

    def __init__(self, config: AlertConfig, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._monotonic = monotonic
        self._sent_at: Dict[str, float] = {}
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL configured; alerts disabled")

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw = raw_config or {}
        webhook_url = raw.get("webhook_url") or os.getenv(raw.get("webhook_env", "ALERT_WEBHOOK_URL"), "")
        return cls(AlertConfig(
            enabled=enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.parse(raw.get("min_severity")),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 300.0)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    # ----- rebalancer conditions -----

    def emergency_response(self, level: int) -> bool:
        return self.notify(
            AlertSeverity.CRITICAL,
            "Circuit breaker EMERGENCY",
            "Redeeming entire strategy balance to reserve",
            {"circuit_breaker_level": int(level)},
        )

    def failure_streak(self, consecutive_failures: int, threshold: int,
                       last_action: str, last_error: Optional[str]) -> bool:
        return self.notify(
            AlertSeverity.WARNING,
            "Rebalancer failing repeatedly",
            f"Consecutive failed submissions above threshold {threshold}",
            {
                "consecutive_failures": consecutive_failures,
                "last_action": last_action,
                "last_error": last_error,
            },
        )

    # ----- delivery -----

    def notify(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> bool:
        """True if the alert went out (or was logged in dry-run)."""
        if not self._enabled or severity < self._config.min_severity:
            return False

        alert = Alert(severity=severity, title=title, message=message, context=dict(context or {}))
        now = self._monotonic()
        last = self._sent_at.get(alert.fingerprint)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug("Alert suppressed (duplicate within %.0fs): %s", self._config.dedupe_seconds, title)
            return False
        self._sent_at[alert.fingerprint] = now

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, alert.context)
            return True
        return self._post(alert)

    def _post(self, alert: Alert) -> bool:
        """Best-effort delivery: every failure is logged, none is raised."""
        try:
            request = urllib.request.Request(
                self._config.webhook_url,
                data=json.dumps(alert.to_payload(), default=str).encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, alert.title)
                    return False
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", alert.title, exc)
            return False
        except Exception as exc:
            logger.error("Alert webhook error for '%s': %s: %s", alert.title, type(exc).__name__, exc)
            return False
        return True


__all__ = ["Alert", "AlertConfig", "AlertService", "AlertSeverity"]
