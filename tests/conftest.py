from datetime import datetime, timedelta, timezone

import pytest

from podmirror import db


class FakeClock:
    """Virtual clock whose waiter advances time instead of sleeping."""

    def __init__(self, start):
        self.now = start
        self.waits = []
        self.on_wait = None

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def wait(self, seconds):
        self.waits.append(seconds)
        self.now += timedelta(seconds=seconds)
        if self.on_wait is not None:
            return bool(self.on_wait(self))
        return False


@pytest.fixture
def session_factory():
    """Create an in-memory SQLite session factory for testing."""
    engine = db.init_engine("sqlite:///:memory:")
    yield db.get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def t0():
    # A Monday at midnight.
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def clock(t0):
    return FakeClock(t0)
