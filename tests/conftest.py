"""Shared test fixtures for Agendum."""

import logging

import pytest
import pytest_asyncio

from agendum.core.config import AgendumConfig
from agendum.executors.registry import ExecutorRegistry
from agendum.store.memory import InMemoryJobStore
from agendum.store.sqlite import SQLiteJobStore

T0 = 1_800_000_000.0


class FakeClock:
    """Controllable clock for the poller."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return AgendumConfig()


@pytest.fixture
def registry():
    """Create a fresh executor registry."""
    return ExecutorRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Every JobStore backend, initialized and closed around the test."""
    if request.param == "memory":
        s = InMemoryJobStore()
    else:
        s = SQLiteJobStore(tmp_path / "jobs.db")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture(autouse=True)
def _reset_agendum_logger():
    """setup_logging() installs handlers; drop them so streams don't leak."""
    yield
    logger = logging.getLogger("agendum")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
