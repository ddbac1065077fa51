"""Shared fixtures for the redenv test-suite."""
import pytest
import pytest_asyncio

from redenv.storage import MemoryStore
from redenv.vault import crypto
from redenv.vault.keys import register_project

PROJECT = "P"
PASSWORD = "pw12345!"
AUTHOR = "tester@example"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """PBKDF2 at full strength makes the suite needlessly slow."""
    monkeypatch.setattr(crypto, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest_asyncio.fixture
async def pek(store):
    """Register project ``P`` and return its unwrapped key."""
    return await register_project(store, PROJECT, PASSWORD)
