"""
Pytest fixtures for the ping/pong relayer tests.
"""
import asyncio
from decimal import Decimal

import pytest

from pingpong_relayer import submitter as submitter_module
from pingpong_relayer._rate_limited_log import reset_rate_limits
from pingpong_relayer.config import RetryPolicy
from pingpong_relayer.reconciler import Reconciler
from pingpong_relayer.store.memory import MemoryIntentStore
from pingpong_relayer.submitter import ResponseSubmitter
from tests.test_helpers import FakeChainGateway

TEST_RPC_URL = "https://rpc.example.com"
TEST_PRIV_KEY = "0x0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
TEST_CONTRACT = "0x1234567890123456789012345678901234567890"

_real_sleep = asyncio.sleep


# Make backoff sleeps instantaneous so retries don't slow the suite down,
# but keep a record of what was asked for
@pytest.fixture(autouse=True)
def backoff_sleeps(monkeypatch):
    sleeps = []

    async def _sleep(delay, *args, **kwargs):
        sleeps.append(delay)
        await _real_sleep(0)

    monkeypatch.setattr(submitter_module, "_sleep", _sleep)
    return sleeps


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's PINGPONG_* settings out of the tests."""
    import os
    for name in list(os.environ):
        if name.startswith("PINGPONG_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store():
    return MemoryIntentStore()


@pytest.fixture
def gateway():
    return FakeChainGateway()


@pytest.fixture
def policy():
    return RetryPolicy(
        max_retries=5,
        initial_delay_ms=1000,
        max_delay_ms=10000,
        jitter_ms=0,
        fee_escalation=Decimal("1.15"),
        confirmation_timeout=1.0,
    )


@pytest.fixture
def submitter(store, gateway, policy):
    return ResponseSubmitter(store, gateway, policy)


@pytest.fixture
def reconciler(store, gateway, submitter):
    return Reconciler(store, gateway, submitter)
