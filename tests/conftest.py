"""
Pytest configuration and fixtures for vault-rebalancer tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from tests.helpers.vault_stubs import FakeClock, RecordingSleeper, make_state


@pytest.fixture
def clock():
    """UTC clock fixed at 2024-06-01 12:00 until advanced."""
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def state_factory():
    return make_state
