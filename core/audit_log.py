"""
vault-rebalancer Core: Audit Logger

Structured record of every tick's observation, decision and execution for
debugging and after-the-fact review of capital movements.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.models import ExecutionOutcome, ScoredAction, VaultState

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs every tick including:
    - Circuit breaker level
    - Vault snapshot
    - All scored candidates and the selected action
    - Execution outcome
    - Tick error, if any

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_tick(self,
                 ts: datetime,
                 mode: str,
                 status: str,
                 circuit_breaker_level: Optional[int] = None,
                 state: Optional[VaultState] = None,
                 ranked: Optional[List[ScoredAction]] = None,
                 selected: Optional[ScoredAction] = None,
                 outcome: Optional[ExecutionOutcome] = None,
                 error: Optional[str] = None,
                 duration_seconds: Optional[float] = None) -> None:
        """Append one tick to the audit trail. Never raises."""
        try:
            entry: Dict[str, Any] = {
                "timestamp": ts.isoformat(),
                "mode": mode,
                "status": status,
                "circuit_breaker_level": circuit_breaker_level,
            }

            if duration_seconds is not None:
                entry["duration_seconds"] = round(duration_seconds, 4)

            if state is not None:
                # Amounts as strings: base units overflow JSON number precision
                entry["vault"] = {
                    "total_assets": str(state.total_assets),
                    "total_lent": str(state.total_lent),
                    "idle_reserve": str(state.idle_reserve),
                    "strategy_balance": str(state.strategy_balance),
                    "total_borrowed": str(state.total_borrowed),
                    "utilisation": str(state.utilisation),
                    "observed_at": state.observed_at.isoformat(),
                }

            if ranked:
                entry["candidates"] = [self._serialize_action(a) for a in ranked]
            if selected is not None:
                entry["selected"] = self._serialize_action(selected)

            if outcome is not None:
                entry["execution"] = {
                    "status": outcome.status.value,
                    "emergency": outcome.emergency,
                    "attempts": outcome.attempts,
                    "confirmation_id": outcome.receipt.confirmation_id if outcome.receipt else None,
                    "tx_hash": outcome.receipt.tx_hash if outcome.receipt else None,
                    "error": outcome.error,
                }

            if error:
                entry["error"] = error

            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")

            logger.debug(f"Audited tick: status={status}")

        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    @staticmethod
    def _serialize_action(action: ScoredAction) -> Dict[str, Any]:
        utility = action.utility
        return {
            "kind": action.kind.value,
            # inf is not valid JSON
            "utility": utility if utility not in (float("inf"), float("-inf")) else str(utility),
            "amount": str(action.amount),
            "rationale": action.rationale,
        }

    def get_recent_ticks(self, n: int = 10) -> List[Dict[str, Any]]:
        """Most recent N tick records, newest first."""
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        ticks = []
        for line in lines[-n:]:
            try:
                ticks.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(ticks))
