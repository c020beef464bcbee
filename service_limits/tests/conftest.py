"""
Shared fixtures for Limits service tests.
"""

from typing import Any, Optional, Sequence, Set

import pytest

from shared.errors import StoreError
from shared.metrics import MetricsCollector
from service_limits.app.store.base import CounterStore
from service_limits.app.store.local_cache import LocalCache
from service_limits.app.store.memory_store import InMemoryCounterStore


# Aligned on a minute boundary so fixed window tests start at a window start
START_MS = 1_700_000_040_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: float = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def seconds(self) -> float:
        return self.now_ms / 1000

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class FailingStore(CounterStore):
    """Store whose every remote operation fails."""

    backend_name = "failing"

    def __init__(self):
        super().__init__()
        self.calls = 0

    def _fail(self):
        self.calls += 1
        raise StoreError("Store unavailable", details={"error": "connection refused"})

    async def get(self, key: str) -> Optional[str]:
        self._fail()

    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> bool:
        self._fail()

    async def _fetch_set_members(self, key: str) -> Set[str]:
        self._fail()

    async def _add_set_members(self, key: str, members: Sequence[str]) -> int:
        self._fail()

    async def _remove_set_members(self, key: str, members: Sequence[str]) -> int:
        self._fail()

    async def script_load(self, source: str) -> str:
        self._fail()

    async def eval_sha(self, sha: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        self._fail()

    async def ping(self) -> bool:
        return False


@pytest.fixture
def clock():
    """Controllable millisecond clock."""
    return FakeClock()


@pytest.fixture
def metrics():
    """Metrics collector with its own registry."""
    return MetricsCollector("limits-test")


@pytest.fixture
def store(clock):
    """In-memory store whose TTLs and local cache follow the fake clock."""
    return InMemoryCounterStore(clock=clock, local_cache=LocalCache(clock=clock.seconds))


@pytest.fixture
def failing_store():
    """Store that raises StoreError on every call."""
    return FailingStore()
