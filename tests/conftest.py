import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio

# Ensure project root is on sys.path so `import ledgersync` works when running pytest from root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Force test settings before any ledgersync imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SYNC_ENABLED"] = "false"

from ledgersync.db import base as db_base  # noqa: E402
from ledgersync.db.models import TransactionKind  # noqa: E402
from ledgersync.sync.clients.base import SourceTransaction  # noqa: E402
from ledgersync.sync.clients.mock_client import MockTransactionSource  # noqa: E402
from ledgersync.sync.config import (  # noqa: E402
    QueueConfig,
    RateLimitConfig,
    RetryConfig,
    SyncConfig,
)
from ledgersync.sync.service import SyncService, set_sync_service  # noqa: E402


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture(scope="function")
async def test_db(tmp_path, monkeypatch):
    """
    Provide a fresh file-backed SQLite database for each test.

    The application's engine and session factory are patched so code that
    falls back to the defaults uses the test database too.
    """
    engine = db_base.create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(db_base.Base.metadata.create_all)

    session_factory = db_base.create_session_factory(engine)
    monkeypatch.setattr(db_base, "engine", engine)
    monkeypatch.setattr(db_base, "AsyncSessionLocal", session_factory)

    yield session_factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_db):
    """Get a database session for a test."""
    async with test_db() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock():
    return FakeClock()


def make_transactions(
    count: int,
    end: Optional[datetime] = None,
    user_ids: Sequence[str] = ("074092", "074093"),
    prefix: str = "tx",
) -> List[SourceTransaction]:
    """`count` transactions one minute apart, ending just before `end`."""
    end = end or datetime.now(timezone.utc)
    kinds = list(TransactionKind)
    return [
        SourceTransaction(
            id=f"{prefix}-{i}-{uuid.uuid4().hex[:6]}",
            user_id=user_ids[i % len(user_ids)],
            created_at=end - timedelta(minutes=i + 1),
            type=kinds[i % len(kinds)],
            amount=Decimal("10.00"),
        )
        for i in range(count)
    ]


def make_sync_config(**overrides) -> SyncConfig:
    """Sync configuration with no pacing and fast queue polling."""
    values = dict(
        stream_key="test-stream",
        page_size=1000,
        page_jobs_timeout_seconds=30,
        retry=RetryConfig(max_attempts=3, initial_delay=0.01),
        rate_limit=RateLimitConfig(limit=1000, window_seconds=60, pacing_delay_seconds=0),
        queue=QueueConfig(poll_interval_seconds=0.01),
    )
    values.update(overrides)
    return SyncConfig(**values)


@pytest.fixture
def make_service(test_db):
    """Build SyncService instances against the test database."""
    services: List[SyncService] = []

    def _make(
        transactions: Optional[Sequence[SourceTransaction]] = None,
        config: Optional[SyncConfig] = None,
        source=None,
    ) -> SyncService:
        source = source or MockTransactionSource(
            transactions=transactions if transactions is not None else [],
            latency_ms=0,
        )
        service = SyncService(
            config=config or make_sync_config(), source=source, session_factory=test_db
        )
        services.append(service)
        return service

    yield _make

    set_sync_service(None)


@pytest_asyncio.fixture
async def running_service(make_service):
    """A SyncService whose queue workers are running; stopped after the test."""
    started: List[SyncService] = []

    async def _start(*args, **kwargs) -> SyncService:
        service = make_service(*args, **kwargs)
        await service.queue.start()
        started.append(service)
        return service

    yield _start

    for service in started:
        await service.stop()
