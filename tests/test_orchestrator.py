"""
Tests for the sync orchestrator.

End-to-end runs over the mock source: pagination fan-out, idempotent
re-sync, watermark behaviour on success and failure, and the single-flight
guard.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ledgersync.db.unit_of_work import UnitOfWork
from ledgersync.sync.clients.base import APIConnectionError, APIRateLimitError
from ledgersync.sync.clients.mock_client import MockTransactionSource
from ledgersync.sync.config import RetryConfig
from ledgersync.sync.metrics import RunStatus
from ledgersync.sync.orchestrator import EPOCH, SyncPhase

from tests.conftest import make_sync_config, make_transactions


class FlakySource(MockTransactionSource):
    """Mock source whose listed pages fail with a connection error."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_pages = set()
        self.fail_times = None
        self.error_cls = APIConnectionError

    async def fetch_page(self, start_date, end_date, page=1, page_size=1000):
        if page in self.failing_pages and (self.fail_times is None or self.fail_times > 0):
            self.fetch_calls += 1
            if self.fail_times is not None:
                self.fail_times -= 1
            raise self.error_cls(f"page {page} unavailable")
        return await super().fetch_page(start_date, end_date, page=page, page_size=page_size)


async def ledger_rows(service) -> int:
    return await service.ledger.count()


@pytest.mark.asyncio
class TestSyncRun:
    """Tests for successful runs."""

    async def test_two_pages_fetch_all_records(self, running_service):
        """1000 + 500 records are stored with exactly two source calls."""
        service = await running_service(make_transactions(1500))

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.SUCCESS.value
        assert result["total_pages"] == 2
        assert result["records_fetched"] == 1500
        assert result["records_inserted"] == 1500
        assert service.source.fetch_calls == 2
        assert await ledger_rows(service) == 1500
        assert service.orchestrator.phase == SyncPhase.IDLE

    async def test_rerun_is_idempotent(self, running_service, test_db):
        """Re-syncing data that is already stored adds no rows."""
        service = await running_service(make_transactions(1200))

        first = await service.orchestrator.run_once()
        assert first["records_inserted"] == 1200

        # Force the second run to cover the same window again
        async with UnitOfWork(session_factory=test_db) as uow:
            state = await uow.sync_state.get_by_stream(service.config.stream_key)
            state.last_sync_time = EPOCH

        second = await service.orchestrator.run_once()

        assert second["status"] == RunStatus.SUCCESS.value
        assert second["records_inserted"] == 0
        assert second["records_duplicate"] == 1200
        assert await ledger_rows(service) == 1200

    async def test_single_page_enqueues_no_jobs(self, running_service):
        service = await running_service(make_transactions(10))

        result = await service.orchestrator.run_once()

        assert result["total_pages"] == 1
        assert service.source.fetch_calls == 1
        counts = await service.queue.get_counts()
        assert sum(counts.values()) == 0

    async def test_empty_window_still_advances(self, running_service):
        service = await running_service([])

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.SUCCESS.value
        assert result["total_pages"] == 0
        watermark = await service.orchestrator.get_watermark()
        assert watermark > EPOCH

    async def test_incremental_window(self, running_service):
        """The second run only asks for records newer than the first run's end."""
        service = await running_service(make_transactions(5))

        first = await service.orchestrator.run_once()
        first_end = datetime.fromisoformat(first["window_end"])
        service.source.transactions = make_transactions(
            3, end=first_end + timedelta(minutes=5), prefix="new"
        ) + list(service.source.transactions)
        service.orchestrator._clock = lambda: first_end + timedelta(minutes=10)

        second = await service.orchestrator.run_once()

        assert second["window_start"] == first["window_end"]
        assert second["records_fetched"] == 3
        assert await ledger_rows(service) == 8


@pytest.mark.asyncio
class TestWatermark:
    """Tests for watermark movement."""

    async def test_initial_watermark_is_epoch(self, make_service):
        service = make_service()
        assert await service.orchestrator.get_watermark() == EPOCH

    async def test_watermark_advances_to_run_time(self, running_service):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        service = await running_service(make_transactions(3))
        service.orchestrator._clock = lambda: now

        await service.orchestrator.run_once()

        assert await service.orchestrator.get_watermark() == now

    async def test_watermark_is_monotonic(self, running_service):
        service = await running_service(make_transactions(3))

        marks = []
        for _ in range(3):
            await service.orchestrator.run_once()
            marks.append(await service.orchestrator.get_watermark())

        assert marks == sorted(marks)

    async def test_watermark_never_moves_backwards(self, test_db):
        """A watermark update with an older time is rejected."""
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        async with UnitOfWork(session_factory=test_db) as uow:
            await uow.sync_state.create(stream_key="s", last_sync_time=now)
            assert await uow.sync_state.try_acquire_run("s", "r1", now, now + timedelta(hours=1))
            assert not await uow.sync_state.advance_watermark("s", "r1", now - timedelta(days=1))

    async def test_page_two_failure_keeps_watermark(self, running_service):
        """A run that commits page 1 but loses page 2 leaves the watermark; the next run completes."""
        source = FlakySource(transactions=make_transactions(1500), latency_ms=0)
        source.failing_pages = {2}
        service = await running_service(
            source=source,
            config=make_sync_config(retry=RetryConfig(max_attempts=2, initial_delay=0.01)),
        )

        failed = await service.orchestrator.run_once()

        assert failed["status"] == RunStatus.FAILED.value
        assert "page job" in failed["error"]
        assert await service.orchestrator.get_watermark() == EPOCH
        assert await ledger_rows(service) == 1000
        assert len(await service.queue.list_failed()) == 1

        source.failing_pages = set()
        calls_before = source.fetch_calls
        recovered = await service.orchestrator.run_once()

        assert recovered["status"] == RunStatus.SUCCESS.value
        assert source.fetch_calls - calls_before == 2
        assert recovered["records_inserted"] == 500
        assert recovered["records_duplicate"] == 1000
        assert await ledger_rows(service) == 1500
        assert await service.orchestrator.get_watermark() > EPOCH

    async def test_page_job_retry_recovers_within_run(self, running_service):
        """A transient page failure is absorbed by the job's retry budget."""
        source = FlakySource(transactions=make_transactions(1500), latency_ms=0)
        source.failing_pages = {2}
        source.fail_times = 1
        service = await running_service(source=source)

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.SUCCESS.value
        assert source.fetch_calls == 3
        assert await ledger_rows(service) == 1500

    async def test_first_page_rate_limit_is_retried(self, running_service):
        """A rate-limited page 1 is retried with backoff instead of failing the run."""
        source = FlakySource(transactions=make_transactions(1500), latency_ms=0)
        source.failing_pages = {1}
        source.fail_times = 1
        source.error_cls = APIRateLimitError
        service = await running_service(source=source)

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.SUCCESS.value
        assert result["total_pages"] == 2
        assert source.fetch_calls == 3
        assert await ledger_rows(service) == 1500
        assert await service.orchestrator.get_watermark() > EPOCH

    async def test_first_page_failure_fails_run(self, running_service):
        """Page 1 failing on every attempt fails the run and is kept for operators."""
        source = FlakySource(transactions=make_transactions(1500), latency_ms=0)
        source.failing_pages = {1}
        service = await running_service(source=source)

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.FAILED.value
        assert "page 1 unavailable" in result["error"]
        assert service.orchestrator.phase == SyncPhase.FAILED
        assert await service.orchestrator.get_watermark() == EPOCH
        assert source.fetch_calls == service.config.retry.max_attempts
        counts = await service.queue.get_counts()
        assert counts == {"waiting": 0, "active": 0, "failed": 1}

        # The guard was released, so the next run goes ahead
        source.failing_pages = set()
        assert (await service.orchestrator.run_once())["status"] == RunStatus.SUCCESS.value

    async def test_page_job_timeout_names_the_error(self, make_service):
        """A run whose page jobs are never processed fails once its time budget runs out."""
        service = make_service(
            make_transactions(3), config=make_sync_config(page_jobs_timeout_seconds=0.1)
        )

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.FAILED.value
        assert "JobTimeoutError" in result["error"]
        assert await service.orchestrator.get_watermark() == EPOCH
        assert (await service.orchestrator.get_state())["run_id"] is None


@pytest.mark.asyncio
class TestSingleFlight:
    """Tests for the stream guard."""

    async def test_held_stream_skips_run(self, make_service, test_db):
        service = make_service(make_transactions(3))
        now = datetime.now(timezone.utc)
        async with UnitOfWork(session_factory=test_db) as uow:
            await uow.sync_state.create(stream_key=service.config.stream_key, last_sync_time=EPOCH)
            await uow.sync_state.try_acquire_run(
                service.config.stream_key, "other-run", now, now + timedelta(hours=1)
            )

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.SKIPPED.value
        assert service.source.fetch_calls == 0
        state = await service.orchestrator.get_state()
        assert state["run_id"] == "other-run"

    async def test_expired_lease_is_taken_over(self, running_service, test_db):
        """A crashed run's claim stops blocking the stream once its lease expires."""
        service = await running_service(make_transactions(3))
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        async with UnitOfWork(session_factory=test_db) as uow:
            await uow.sync_state.create(stream_key=service.config.stream_key, last_sync_time=EPOCH)
            await uow.sync_state.try_acquire_run(
                service.config.stream_key, "crashed-run", past, past + timedelta(hours=1)
            )

        result = await service.orchestrator.run_once()

        assert result["status"] == RunStatus.SUCCESS.value
        state = await service.orchestrator.get_state()
        assert state["run_id"] is None

    async def test_concurrent_runs_do_not_overlap(self, running_service):
        source = MockTransactionSource(transactions=make_transactions(5), latency_ms=200)
        service = await running_service(source=source)

        results = await asyncio.gather(
            service.orchestrator.run_once(), service.orchestrator.run_once()
        )

        statuses = sorted(r["status"] for r in results)
        assert statuses == [RunStatus.SKIPPED.value, RunStatus.SUCCESS.value]
        assert source.fetch_calls == 1


@pytest.mark.asyncio
class TestStatus:
    async def test_status_reports_last_run(self, running_service):
        service = await running_service(make_transactions(3))
        await service.orchestrator.run_once()

        status = service.orchestrator.get_status()

        assert status["phase"] == SyncPhase.IDLE.value
        assert status["last_run"]["status"] == RunStatus.SUCCESS.value
        assert status["last_run"]["records_inserted"] == 3
        assert status["metrics_24h"]["successful_runs"] == 1
        assert status["success_rate_24h"] == 1.0
