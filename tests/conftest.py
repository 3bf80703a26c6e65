"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobqueue.config import QueueSettings
from jobqueue.db import Database
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.queue import JobQueue

# Optional external database, e.g. postgresql+asyncpg://.../jobqueue_test.
# Without it the tests run against a throwaway SQLite file.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    if TEST_DATABASE_URL:
        return TEST_DATABASE_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[Database]:
    """Create a database handle with a fresh queue table."""
    db = Database(database_url)
    await db.drop_schema()
    await db.create_schema()

    yield db

    await db.dispose()


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to a fixed instant; tests advance it explicitly."""
    return FakeClock(datetime(2026, 1, 15, 9, 30, 0))


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def queue_settings() -> QueueSettings:
    """Create test queue settings."""
    return QueueSettings(
        default_queue="default",
        reserve_timeout_sec=120,
        sleep_when_empty_ms=0,
        dead_after_attempts=8,
    )


@pytest.fixture
def job_queue(
    database: Database,
    queue_settings: QueueSettings,
    clock: FakeClock,
    metrics: MetricsCollector,
) -> JobQueue:
    """Create a queue bound to the test database and clock."""
    return JobQueue(database, queue_settings, clock=clock, metrics=metrics)


@pytest.fixture
def sample_payload() -> dict:
    """Create a sample job payload."""
    return {"customer_id": 42, "message": "سلام", "channels": ["sms"]}
