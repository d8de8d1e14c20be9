"""
JSON-RPC readers for vault state and the circuit breaker level.

All figures for one snapshot are fetched in a single JSON-RPC batch of
``eth_call`` requests so they describe the same block. Any per-call error,
a missing response or a transport failure fails the whole read with
StateReadError; the monitor loop then skips the tick.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from core.exceptions import StateReadError
from core.models import VaultState

logger = logging.getLogger(__name__)

# ERC-20 balanceOf(address) and ERC-4626 totalAssets()
BALANCE_OF_SELECTOR = "0x70a08231"
TOTAL_ASSETS_SELECTOR = "0x01e1d114"


@dataclass(frozen=True)
class ContractCall:
    name: str
    to: str
    data: str


def encode_address_arg(address: str) -> str:
    """ABI-encode an address argument as one 32-byte word (hex, no prefix)."""
    value = address.lower()
    if value.startswith("0x"):
        value = value[2:]
    if len(value) != 40:
        raise ValueError(f"Invalid address: {address}")
    return value.rjust(64, "0")


def decode_uint(result: Any) -> int:
    if not isinstance(result, str) or not result.startswith("0x"):
        raise ValueError(f"Unexpected eth_call result: {result!r}")
    payload = result[2:]
    if not payload:
        raise ValueError("Empty eth_call result")
    return int(payload, 16)


class JsonRpcClient:
    """Minimal JSON-RPC over HTTP with batch support."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def batch_call(self, calls: Sequence[ContractCall], block: str = "latest") -> Dict[str, int]:
        requests_by_id: Dict[int, ContractCall] = {}
        body: List[Dict[str, Any]] = []
        for call in calls:
            request_id = next(self._ids)
            requests_by_id[request_id] = call
            body.append({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": "eth_call",
                "params": [{"to": call.to, "data": call.data}, block],
            })

        try:
            response = self._session.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise StateReadError("rpc_transport", exc) from exc

        if not isinstance(payload, list):
            raise StateReadError(f"rpc_batch: expected list response, got {type(payload).__name__}")

        results: Dict[str, int] = {}
        for item in payload:
            call = requests_by_id.get(item.get("id"))
            if call is None:
                continue
            if item.get("error"):
                message = item["error"].get("message", "unknown error")
                raise StateReadError(f"{call.name}: {message}")
            try:
                results[call.name] = decode_uint(item.get("result"))
            except ValueError as exc:
                raise StateReadError(call.name, exc) from exc

        missing = [call.name for call in calls if call.name not in results]
        if missing:
            raise StateReadError(f"rpc_batch: missing results for {', '.join(missing)}")
        return results

    def close(self) -> None:
        self._session.close()


@dataclass(frozen=True)
class VaultContracts:
    vault_address: str
    reserve_token_address: str
    strategy_token_address: str
    lending_pool_address: str
    total_lent_selector: str
    total_borrowed_selector: str
    circuit_breaker_selector: str
    total_assets_selector: str = TOTAL_ASSETS_SELECTOR


class JsonRpcVaultReader:
    """Reads a VaultState snapshot in one batch."""

    def __init__(self, client: JsonRpcClient, contracts: VaultContracts, strategy_yield_rate: float,
                 clock: Optional[Callable[[], datetime]] = None):
        self.client = client
        self.contracts = contracts
        self.strategy_yield_rate = strategy_yield_rate
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _calls(self) -> List[ContractCall]:
        c = self.contracts
        vault_arg = encode_address_arg(c.vault_address)
        return [
            ContractCall("total_assets", c.vault_address, c.total_assets_selector),
            ContractCall("total_lent", c.vault_address, c.total_lent_selector),
            ContractCall("idle_reserve", c.reserve_token_address, BALANCE_OF_SELECTOR + vault_arg),
            ContractCall("strategy_balance", c.strategy_token_address, BALANCE_OF_SELECTOR + vault_arg),
            ContractCall("total_borrowed", c.lending_pool_address, c.total_borrowed_selector),
        ]

    def read(self) -> VaultState:
        values = self.client.batch_call(self._calls())
        total_assets = values["total_assets"]
        total_borrowed = values["total_borrowed"]

        state = VaultState(
            total_assets=total_assets,
            total_lent=values["total_lent"],
            idle_reserve=values["idle_reserve"],
            strategy_balance=values["strategy_balance"],
            total_borrowed=total_borrowed,
            utilisation=VaultState.compute_utilisation(total_borrowed, total_assets),
            strategy_yield_rate=self.strategy_yield_rate,
            observed_at=self._clock(),
        )
        logger.debug(
            "Vault state read: total_assets=%s total_lent=%s idle=%s strategy=%s utilisation=%s",
            state.total_assets, state.total_lent, state.idle_reserve,
            state.strategy_balance, state.utilisation,
        )
        return state


class JsonRpcCircuitBreakerReader:
    """Reads the raw circuit breaker level from the vault."""

    def __init__(self, client: JsonRpcClient, contracts: VaultContracts):
        self.client = client
        self.contracts = contracts

    def read_level(self) -> int:
        call = ContractCall("circuit_breaker_level", self.contracts.vault_address,
                            self.contracts.circuit_breaker_selector)
        return self.client.batch_call([call])["circuit_breaker_level"]


__all__ = [
    "ContractCall",
    "JsonRpcClient",
    "JsonRpcVaultReader",
    "JsonRpcCircuitBreakerReader",
    "VaultContracts",
]
