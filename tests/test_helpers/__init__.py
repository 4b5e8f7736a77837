"""
Shared test doubles.
"""
from .fake_chain import (
    HOLD, LATE, MINE, NO_EVENT, RESPONDER, REVERT, STRANGER, TIMEOUT,
    FakeChainGateway, fake_hash
)

__all__ = [
    "FakeChainGateway", "fake_hash", "RESPONDER", "STRANGER",
    "MINE", "TIMEOUT", "REVERT", "NO_EVENT", "HOLD", "LATE",
]
