"""
vault-rebalancer Core: Rebalance Executor

Turns a selected action into a submitted protocol operation.

Flow:
1. Daily quota gate (skipped for emergency actions)
2. Build the operation for the action kind
3. Submit with bounded exponential-backoff retry on transient failures
4. Feed the outcome back into the rate limiter and the failure counter

execute() never raises: a failed submission must not abort the
scheduler's tick. Outcomes are visible through logs, metrics and the
returned ExecutionOutcome.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Optional

import requests

from core.exceptions import FailureCategory, SubmissionError, category_for_status
from core.interfaces import Sleeper, Submitter, SystemSleeper
from core.models import (
    ExecutionOutcome,
    ExecutionStatus,
    ExecutorState,
    OperationDescriptor,
    ScoredAction,
)
from core.rate_limiter import DailyRateLimiter

logger = logging.getLogger(__name__)

REBALANCE_FUNCTION = "rebalance()"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after a failed 1-based attempt: base, 2*base, 4*base..."""
        return self.base_delay_seconds * (2 ** (attempt - 1))


class VaultOperationBuilder:
    """
    Maps scored actions onto vault calls.

    The vault exposes a single rebalance() entry point that moves capital
    toward its buffer target in whichever direction is needed, so both
    action kinds produce the same call; kind and amount travel as metadata.
    """

    def __init__(self, vault_address: str):
        self.vault_address = vault_address

    def build(self, action: ScoredAction) -> OperationDescriptor:
        if action.is_do_nothing:
            raise ValueError("do_nothing has no protocol operation")
        return OperationDescriptor(
            target=self.vault_address,
            function=REBALANCE_FUNCTION,
            action_kind=action.kind,
            amount=action.amount,
            idempotency_key=str(uuid.uuid4()),
        )


def classify_failure(exc: BaseException) -> FailureCategory:
    """Structured category for a submission failure."""
    if isinstance(exc, SubmissionError):
        return exc.category
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        return category_for_status(exc.response.status_code)
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError,
                        TimeoutError, ConnectionError)):
        return FailureCategory.TRANSIENT
    if isinstance(exc, PermissionError):
        return FailureCategory.PERMANENT
    return FailureCategory.UNKNOWN


class RebalanceExecutor:
    """
    Rate-limited, retrying submission of rebalance actions.

    Owns the consecutive-failure counter. The rate limiter is shared with
    whoever constructed it (health and metrics read it too) but only this
    class commits to it.
    """

    def __init__(self,
                 submitter: Submitter,
                 rate_limiter: DailyRateLimiter,
                 operation_builder: VaultOperationBuilder,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleeper: Optional[Sleeper] = None,
                 consecutive_failure_warning: int = 10,
                 metrics=None,
                 alert_service=None):
        self.submitter = submitter
        self.rate_limiter = rate_limiter
        self.operation_builder = operation_builder
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleeper = sleeper or SystemSleeper()
        self.consecutive_failure_warning = consecutive_failure_warning
        self.metrics = metrics
        self.alert_service = alert_service
        self.state = ExecutorState()

    @property
    def consecutive_failures(self) -> int:
        return self.state.consecutive_failures

    def execute(self, action: ScoredAction, emergency: bool = False) -> ExecutionOutcome:
        try:
            outcome = self._execute(action, emergency)
        except Exception as exc:
            # Builder bug; still must not escape the tick
            logger.error("Executor failed unexpectedly for %s: %s", action.kind.value, exc, exc_info=True)
            outcome = ExecutionOutcome(
                status=ExecutionStatus.FAILED_PERMANENT,
                action=action,
                emergency=emergency,
                error=str(exc),
            )

        # Bookkeeping runs exactly once per call, outside the guarded section
        if outcome.success:
            self._record_success(outcome)
        elif outcome.status in (ExecutionStatus.FAILED_TRANSIENT, ExecutionStatus.FAILED_PERMANENT):
            self._record_failure(outcome)

        if self.metrics is not None:
            self.metrics.record_execution(outcome)
            self.metrics.record_rate_limiter(self.rate_limiter.current_count(), self.rate_limiter.max_per_day)
            self.metrics.record_consecutive_failures(self.state.consecutive_failures)
        return outcome

    def _execute(self, action: ScoredAction, emergency: bool) -> ExecutionOutcome:
        if not emergency and not self.rate_limiter.try_acquire():
            logger.info(
                "Rebalance deferred: daily limit reached (action=%s, daily_count=%d/%d)",
                action.kind.value,
                self.rate_limiter.current_count(),
                self.rate_limiter.max_per_day,
            )
            return ExecutionOutcome(status=ExecutionStatus.DEFERRED, action=action, emergency=emergency)

        if action.is_do_nothing:
            return ExecutionOutcome(status=ExecutionStatus.SKIPPED, action=action, emergency=emergency)

        operation = self.operation_builder.build(action)
        logger.info(
            "Executing rebalance: %s amount=%s emergency=%s (key=%s)",
            action.kind.value, action.amount, emergency, operation.idempotency_key,
        )

        return self._submit_with_retry(action, operation, emergency)

    def _record_success(self, outcome: ExecutionOutcome) -> None:
        if not outcome.emergency:
            self.rate_limiter.commit()
        self.state.consecutive_failures = 0
        receipt = outcome.receipt
        logger.info(
            "✅ Rebalance executed: %s amount=%s tx=%s status=%s emergency=%s",
            outcome.action.kind.value,
            outcome.action.amount,
            receipt.tx_hash if receipt else None,
            receipt.final_status if receipt else None,
            outcome.emergency,
        )

    def _submit_with_retry(self, action: ScoredAction, operation: OperationDescriptor,
                           emergency: bool) -> ExecutionOutcome:
        max_attempts = max(1, self.retry_policy.max_attempts)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                receipt = self.submitter.submit(operation)
            except Exception as exc:
                last_error = exc
                category = classify_failure(exc)

                if category is FailureCategory.PERMANENT:
                    logger.error(
                        "Submission failed permanently on attempt %d/%d (%s): %s",
                        attempt, max_attempts, action.kind.value, exc,
                    )
                    return ExecutionOutcome(
                        status=ExecutionStatus.FAILED_PERMANENT,
                        action=action,
                        emergency=emergency,
                        attempts=attempt,
                        error=str(exc),
                    )

                if category is FailureCategory.UNKNOWN:
                    logger.warning(
                        "Submission failed with unclassified error on attempt %d/%d; treating as transient: %r",
                        attempt, max_attempts, exc,
                    )
                else:
                    logger.warning(
                        "Submission failed (transient) on attempt %d/%d: %s",
                        attempt, max_attempts, exc,
                    )

                if attempt < max_attempts:
                    if getattr(exc, "key_spent", False):
                        operation = replace(operation, idempotency_key=str(uuid.uuid4()))
                        logger.info("Previous transaction settled as failed; retrying under key %s",
                                    operation.idempotency_key)
                    delay = self.retry_policy.delay_for(attempt)
                    logger.info(f"Retrying in {delay:.1f}s...")
                    self.sleeper.sleep(delay)
                continue

            logger.debug("Submission succeeded on attempt %d: %s", attempt, receipt.confirmation_id)
            return ExecutionOutcome(
                status=ExecutionStatus.SUBMITTED,
                action=action,
                emergency=emergency,
                attempts=attempt,
                receipt=receipt,
            )

        logger.error(f"All {max_attempts} submission attempts exhausted for {action.kind.value}")
        return ExecutionOutcome(
            status=ExecutionStatus.FAILED_TRANSIENT,
            action=action,
            emergency=emergency,
            attempts=max_attempts,
            error=str(last_error) if last_error else None,
        )

    def _record_failure(self, outcome: ExecutionOutcome) -> None:
        self.state.consecutive_failures += 1
        will_recover = outcome.status is ExecutionStatus.FAILED_TRANSIENT

        logger.error(
            "Rebalance failed (%s): action=%s emergency=%s consecutive_failures=%d%s",
            "transient, may succeed next tick" if will_recover else "permanent, needs manual fix",
            outcome.action.kind.value,
            outcome.emergency,
            self.state.consecutive_failures,
            f" error={outcome.error}" if outcome.error else "",
        )

        if self.state.consecutive_failures > self.consecutive_failure_warning:
            logger.warning(
                "⚠️ Excessive consecutive failures: %d (threshold %d); loop keeps running",
                self.state.consecutive_failures,
                self.consecutive_failure_warning,
            )
            if self.alert_service is not None:
                try:
                    self.alert_service.failure_streak(
                        self.state.consecutive_failures,
                        self.consecutive_failure_warning,
                        outcome.action.kind.value,
                        outcome.error,
                    )
                except Exception as exc:
                    logger.error("Failure-streak alert failed: %s", exc)
