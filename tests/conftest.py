import pytest

from starledger.chain import Chain
from starledger.registry import StarRegistry
from starledger.wallet import Wallet


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain(clock):
    return Chain(clock=clock)


@pytest.fixture
def registry(chain):
    return StarRegistry(chain)


@pytest.fixture
def wallet():
    return Wallet.create()
