"""
Submitters: hand rebalance operations to the custodial signing service.

HttpSubmitter maps every failure onto a FailureCategory so the executor's
retry policy never has to inspect message text:

- network errors, timeouts, HTTP 429 and 5xx, FAILED/STUCK transactions
  and a transaction that does not settle in time are TRANSIENT; FAILED/STUCK
  also mark the idempotency key as spent so the executor retries under a
  fresh one, while a settle timeout keeps the key to avoid a double submit
- HTTP 401/403, DENIED/CANCELLED transactions and calls outside the
  whitelist are PERMANENT
- anything else (other 4xx, malformed responses) is UNKNOWN
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import requests

from core.exceptions import FailureCategory, SubmissionError, category_for_status
from core.interfaces import Sleeper, SystemSleeper
from core.models import OperationDescriptor, SubmissionReceipt

logger = logging.getLogger(__name__)

SUCCESS_STATES = frozenset({"COMPLETE", "CONFIRMED"})
TRANSIENT_STATES = frozenset({"FAILED", "STUCK"})
PERMANENT_STATES = frozenset({"DENIED", "CANCELLED"})


class CallWhitelist:
    """(target, function) pairs the agent is allowed to submit."""

    def __init__(self, allowed: Iterable[Tuple[str, str]]):
        self._allowed = {(target.lower(), function) for target, function in allowed}

    def is_allowed(self, operation: OperationDescriptor) -> bool:
        allowed = (operation.target.lower(), operation.function) in self._allowed
        if not allowed:
            logger.warning(
                "Call not whitelisted: target=%s function=%s",
                operation.target, operation.function,
            )
        return allowed


class HttpSubmitter:
    """
    Submits contract executions to a signing service and waits for them.

    The service is expected to expose:
        POST {base_url}/transactions             -> {"id": ...}
        GET  {base_url}/transactions/{id}        -> {"state": ..., "txHash": ...}
    """

    def __init__(self,
                 base_url: str,
                 api_key: str,
                 wallet_id: str,
                 whitelist: CallWhitelist,
                 request_timeout: float = 20.0,
                 settle_timeout: float = 60.0,
                 poll_interval: float = 2.0,
                 session: Optional[requests.Session] = None,
                 sleeper: Optional[Sleeper] = None,
                 monotonic: Callable[[], float] = time.monotonic):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.wallet_id = wallet_id
        self.whitelist = whitelist
        self.request_timeout = request_timeout
        self.settle_timeout = settle_timeout
        self.poll_interval = poll_interval
        self._session = session or requests.Session()
        self._sleeper = sleeper or SystemSleeper()
        self._monotonic = monotonic

    def submit(self, operation: OperationDescriptor) -> SubmissionReceipt:
        if not self.whitelist.is_allowed(operation):
            raise SubmissionError(
                f"Call to {operation.target} {operation.function} is not whitelisted",
                FailureCategory.PERMANENT,
            )

        logger.info("Submitting %s to %s (%s)", operation.function, operation.target, operation.action_kind.value)
        created = self._request("POST", "/transactions", body={
            "walletId": self.wallet_id,
            "contractAddress": operation.target,
            "abiFunctionSignature": operation.function,
            "abiParameters": list(operation.args),
            "idempotencyKey": operation.idempotency_key,
            "feeLevel": "MEDIUM",
            "metadata": {
                "action": operation.action_kind.value,
                "amount": str(operation.amount),
            },
        })

        transaction_id = created.get("id")
        if not transaction_id:
            raise SubmissionError("Signing service returned no transaction id", FailureCategory.UNKNOWN)

        return self._wait_for_transaction(str(transaction_id))

    def _wait_for_transaction(self, transaction_id: str) -> SubmissionReceipt:
        deadline = self._monotonic() + self.settle_timeout

        while self._monotonic() < deadline:
            data = self._request("GET", f"/transactions/{transaction_id}")
            state = str(data.get("state") or "UNKNOWN").upper()

            if state in SUCCESS_STATES:
                return SubmissionReceipt(
                    confirmation_id=transaction_id,
                    tx_hash=data.get("txHash"),
                    final_status=state,
                )
            if state in PERMANENT_STATES:
                raise SubmissionError(
                    f"Transaction {transaction_id} ended with status: {state}",
                    FailureCategory.PERMANENT,
                )
            if state in TRANSIENT_STATES:
                raise SubmissionError(
                    f"Transaction {transaction_id} ended with status: {state}",
                    FailureCategory.TRANSIENT,
                    key_spent=True,
                )

            self._sleeper.sleep(self.poll_interval)

        raise SubmissionError(
            f"Transaction {transaction_id} timed out after {self.settle_timeout:.0f}s",
            FailureCategory.TRANSIENT,
        )

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self._session.request(method, url, headers=headers, json=body,
                                             timeout=self.request_timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else 0
            raise SubmissionError(
                f"Signing service HTTP {status_code} on {method} {path}",
                category_for_status(status_code),
                exc,
            ) from exc
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise SubmissionError(f"Network error on {method} {path}: {exc}", FailureCategory.TRANSIENT, exc) from exc
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise SubmissionError(f"Request failed on {method} {path}: {exc}", FailureCategory.UNKNOWN, exc) from exc

        data = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise SubmissionError(f"Malformed response on {method} {path}", FailureCategory.UNKNOWN)
        transaction = data.get("transaction")
        return transaction if isinstance(transaction, dict) else data

    def close(self) -> None:
        self._session.close()


class DryRunSubmitter:
    """Logs operations instead of submitting them."""

    def __init__(self):
        self.submitted = []

    def submit(self, operation: OperationDescriptor) -> SubmissionReceipt:
        logger.info(
            "DRY_RUN: would submit %s to %s (%s amount=%s)",
            operation.function, operation.target, operation.action_kind.value, operation.amount,
        )
        self.submitted.append(operation)
        return SubmissionReceipt(
            confirmation_id=f"dry-run-{operation.idempotency_key}",
            final_status="DRY_RUN",
        )


__all__ = ["HttpSubmitter", "DryRunSubmitter", "CallWhitelist", "category_for_status"]
