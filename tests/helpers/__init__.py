"""Test helpers for vault-rebalancer test suite"""

from tests.helpers.vault_stubs import (
    FakeClock,
    RecordingSleeper,
    ScriptedSubmitter,
    StaticLevelReader,
    StaticVaultReader,
    make_state,
    receipt,
)

__all__ = [
    "FakeClock",
    "RecordingSleeper",
    "ScriptedSubmitter",
    "StaticLevelReader",
    "StaticVaultReader",
    "make_state",
    "receipt",
]
