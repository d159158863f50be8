"""Shared test fixtures."""
from __future__ import annotations

import pytest

from klinestore.data import database
from klinestore.data.live import RateLimiter
from klinestore.data.store import TimeSeriesStore

from fakes import FakeBybit, FakeClock


@pytest.fixture
def db(tmp_path):
    """Fresh file-backed SQLite database per test."""
    database.configure_engine(f"sqlite:///{tmp_path / 'klinestore.db'}")
    database.initialize_database()
    yield database.engine
    database.engine.dispose()


@pytest.fixture
def store(db) -> TimeSeriesStore:
    return TimeSeriesStore()


@pytest.fixture
def fake_bybit() -> FakeBybit:
    return FakeBybit()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(fake_clock) -> RateLimiter:
    """10 calls/minute on a fake clock: spacing is enforced, nothing waits."""
    return RateLimiter(10, 60.0, clock=fake_clock, sleep=fake_clock.sleep)
