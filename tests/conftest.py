"""
Shared pytest fixtures for the Constellation test suite.
"""

import pytest

from constellation_core.coordinator import SignatureCoordinator
from constellation_core.keys import Keypair
from constellation_core.ledger import InMemoryLedger
from constellation_core.pubsub import EventBus
from constellation_core.store import PendingStore


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def keypair(n: int) -> Keypair:
    return Keypair.from_raw_seed(bytes([n]) * 32)


@pytest.fixture
def alice():
    return keypair(1)


@pytest.fixture
def bob():
    return keypair(2)


@pytest.fixture
def carol():
    return keypair(3)


@pytest.fixture
def dave():
    return keypair(4)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    """Empty in-memory ledger on the test network."""
    return InMemoryLedger()


@pytest.fixture
def store(tmp_path):
    s = PendingStore(str(tmp_path / "pending.db"))
    yield s
    s.close()


@pytest.fixture
def bus():
    return EventBus(queue_size=16)


@pytest.fixture
def coordinator(ledger, store, bus, clock):
    return SignatureCoordinator(ledger, store, bus, clock=clock)
