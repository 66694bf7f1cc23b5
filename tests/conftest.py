"""Shared fixtures for tests."""

import pytest


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at an arbitrary monotonic reading."""
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Sleep that records delays instead of waiting."""
    return RecordingSleep()


@pytest.fixture
def rate_request() -> dict:
    """Sample rate lookup request."""
    return {"state": "CA", "term": 25, "loan_type": "fixed", "price": 500000, "down_payment": 50000}
