import asyncio

import pytest

from genrelay.gateway.adapters import MockBackend
from genrelay.gateway.backends import BackendRegistry


class FakeClock:
    """Manually advanced monotonic clock with a matching async sleep."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        # Let tasks released before this sleep run at the current time
        for _ in range(3):
            await asyncio.sleep(0)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def primary():
    return MockBackend("primary", model="mock-model")


@pytest.fixture
def fallback():
    return MockBackend("fallback", model="mock-model")


@pytest.fixture
def registry(primary, fallback):
    return BackendRegistry([primary, fallback])
