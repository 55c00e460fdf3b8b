"""
Tests for the durable job queue.

Covers completion, retry with exponential backoff, retention of exhausted
jobs, deduplication, operator retry and stalled-job recovery.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ledgersync.db.models import JobStatus
from ledgersync.db.unit_of_work import UnitOfWork
from ledgersync.sync.clients.base import APIConnectionError, APIRateLimitError
from ledgersync.sync.config import QueueConfig, RetryConfig
from ledgersync.sync.queue import JobNotFoundError, JobOutcome, JobQueue, JobTimeoutError
from ledgersync.sync.retry import classify_error, compute_backoff_delay, describe_error


class MutableClock:
    """Manually advanced UTC datetime clock."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_queue(test_db, clock=None, **retry) -> JobQueue:
    kwargs = {"session_factory": test_db}
    if clock is not None:
        kwargs["clock"] = clock
    return JobQueue(
        config=QueueConfig(name="test", poll_interval_seconds=0.01, lock_seconds=30),
        retry=RetryConfig(**{"max_attempts": 3, "initial_delay": 1.0, **retry}),
        **kwargs,
    )


async def job_row(test_db, job_id):
    async with UnitOfWork(session_factory=test_db) as uow:
        return await uow.jobs.get_by_id(job_id)


class TestBackoff:
    """Tests for backoff arithmetic and error labels."""

    def test_delay_multiplies_each_retry(self):
        delays = [compute_backoff_delay(1.0, 2.0, attempt) for attempt in (1, 2, 3, 4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        assert compute_backoff_delay(1.0, 10.0, 5, max_delay=30.0) == 30.0

    def test_jitter_stays_within_bounds(self):
        for _ in range(20):
            delay = compute_backoff_delay(4.0, 2.0, 1, jitter=True)
            assert 2.0 <= delay <= 4.0

    def test_classify_error(self):
        assert classify_error(APIRateLimitError()) == "rate_limited"
        assert classify_error(APIConnectionError("down")) == "source_unavailable"
        assert classify_error(RuntimeError("boom")) == "error"

    def test_describe_error(self):
        text = describe_error(APIConnectionError("down"))
        assert text == "[source_unavailable] APIConnectionError: down"


@pytest.mark.asyncio
class TestJobLifecycle:
    """Tests for enqueue/process/await."""

    async def test_completed_job_is_discarded(self, test_db):
        """A successful job's row is deleted and await_completion reports success."""
        queue = make_queue(test_db)
        seen = []

        async def handler(data):
            seen.append(data)

        queue.register("work", handler)
        handle = await queue.enqueue("work", {"page": 2})

        result = await queue.process_next()
        assert result.outcome == JobOutcome.COMPLETED
        assert seen == [{"page": 2}]
        assert await job_row(test_db, handle.job_id) is None

        awaited = await queue.await_completion(handle, timeout=1)
        assert awaited.succeeded

    async def test_empty_queue(self, test_db):
        queue = make_queue(test_db)
        assert await queue.process_next() is None

    async def test_retry_then_succeed(self, test_db):
        """A transient failure is retried after its backoff and then completes."""
        clock = MutableClock()
        queue = make_queue(test_db, clock=clock)
        calls = 0

        async def flaky(data):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise APIConnectionError("temporary")

        queue.register("work", flaky)
        handle = await queue.enqueue("work", {})

        assert await queue.process_next() is None
        row = await job_row(test_db, handle.job_id)
        assert row.status == JobStatus.WAITING.value
        assert row.attempts_made == 1
        assert row.available_at == clock.now + timedelta(seconds=1.0)
        assert "temporary" in row.last_error

        # Not claimable before the backoff elapses
        assert await queue.process_next() is None
        assert calls == 1

        clock.advance(1.0)
        result = await queue.process_next()
        assert result.succeeded
        assert result.attempts_made == 2
        assert await job_row(test_db, handle.job_id) is None

    async def test_backoff_delay_grows(self, test_db):
        """Each retry waits initial_delay * multiplier^(n-1)."""
        clock = MutableClock()
        queue = make_queue(test_db, clock=clock, max_attempts=4)

        async def failing(data):
            raise APIRateLimitError("slow down")

        queue.register("work", failing)
        handle = await queue.enqueue("work", {}, backoff_delay=1.0, backoff_multiplier=3.0)

        waits = []
        for _ in range(3):
            assert await queue.process_next() is None
            row = await job_row(test_db, handle.job_id)
            waits.append((row.available_at - clock.now).total_seconds())
            clock.now = row.available_at

        assert waits == [1.0, 3.0, 9.0]

    async def test_exhausted_job_is_retained(self, test_db):
        """After the last attempt the job stays as FAILED and awaiting reports failure."""
        clock = MutableClock()
        queue = make_queue(test_db, clock=clock)
        calls = 0

        async def failing(data):
            nonlocal calls
            calls += 1
            raise APIConnectionError("down")

        queue.register("work", failing)
        handle = await queue.enqueue("work", {"page": 3}, attempts=2)

        assert await queue.process_next() is None
        clock.advance(10)
        result = await queue.process_next()

        assert result.outcome == JobOutcome.FAILED
        assert result.attempts_made == 2
        assert calls == 2

        row = await job_row(test_db, handle.job_id)
        assert row.status == JobStatus.FAILED.value
        assert row.finished_at is not None

        awaited = await queue.await_completion(handle, timeout=1)
        assert not awaited.succeeded
        assert "down" in awaited.error

        failed = await queue.list_failed()
        assert [job["job_id"] for job in failed] == [handle.job_id]
        assert failed[0]["data"] == {"page": 3}

    async def test_unregistered_job_fails(self, test_db):
        queue = make_queue(test_db)
        await queue.enqueue("nobody-handles-this", {}, attempts=1)

        result = await queue.process_next()
        assert result.outcome == JobOutcome.FAILED
        assert "No handler registered" in result.error

    async def test_await_completion_timeout(self, test_db):
        queue = make_queue(test_db)
        handle = await queue.enqueue("work", {})

        with pytest.raises(JobTimeoutError):
            await queue.await_completion(handle, timeout=0.05)


@pytest.mark.asyncio
class TestDeduplication:
    """Tests for named-job dedup."""

    async def test_same_dedup_key_returns_existing_job(self, test_db):
        queue = make_queue(test_db)

        first = await queue.enqueue("work", {"page": 2}, dedup_key="run-1:page:2")
        second = await queue.enqueue("work", {"page": 2}, dedup_key="run-1:page:2")

        assert first == second
        counts = await queue.get_counts()
        assert counts[JobStatus.WAITING.value] == 1

    async def test_distinct_keys_create_distinct_jobs(self, test_db):
        queue = make_queue(test_db)

        first = await queue.enqueue("work", {}, dedup_key="a")
        second = await queue.enqueue("work", {}, dedup_key="b")

        assert first.job_id != second.job_id


@pytest.mark.asyncio
class TestOperatorRetry:
    """Tests for retry_job on retained failures."""

    async def test_retry_failed_job(self, test_db):
        queue = make_queue(test_db)
        fail = True

        async def handler(data):
            if fail:
                raise APIConnectionError("down")

        queue.register("work", handler)
        handle = await queue.enqueue("work", {}, attempts=1)
        assert (await queue.process_next()).outcome == JobOutcome.FAILED

        fail = False
        requeued = await queue.retry_job(handle.job_id)
        assert requeued.job_id == handle.job_id

        row = await job_row(test_db, handle.job_id)
        assert row.status == JobStatus.WAITING.value
        assert row.attempts_made == 0

        assert (await queue.process_next()).succeeded
        assert await queue.list_failed() == []

    async def test_retry_unknown_job(self, test_db):
        queue = make_queue(test_db)
        with pytest.raises(JobNotFoundError):
            await queue.retry_job(9999)

    async def test_retry_job_that_has_not_failed(self, test_db):
        queue = make_queue(test_db)
        handle = await queue.enqueue("work", {})

        with pytest.raises(JobNotFoundError):
            await queue.retry_job(handle.job_id)


@pytest.mark.asyncio
class TestWorkers:
    """Tests for worker tasks and stalled jobs."""

    async def test_stalled_job_is_reclaimed(self, test_db):
        """An ACTIVE job whose lock expired is picked up by another worker."""
        clock = MutableClock()
        queue = make_queue(test_db, clock=clock)
        queue.register("work", lambda data: asyncio.sleep(0))
        handle = await queue.enqueue("work", {})

        # Simulate a worker that claimed the job and died
        async with UnitOfWork(session_factory=test_db) as uow:
            claimed = await uow.jobs.claim_next(
                "test", clock.now, clock.now + timedelta(seconds=30)
            )
            assert claimed.id == handle.job_id

        assert await queue.process_next() is None

        clock.advance(31)
        result = await queue.process_next()
        assert result.succeeded
        # The lost run counted as the first attempt
        assert result.attempts_made == 2

    async def test_repeatedly_stalled_job_fails_after_budget(self, test_db):
        """A job that keeps losing its worker ends FAILED instead of being reclaimed forever."""
        clock = MutableClock()
        queue = make_queue(test_db, clock=clock)
        handle = await queue.enqueue("work", {})

        claims = 0
        for _ in range(10):
            async with UnitOfWork(session_factory=test_db) as uow:
                await uow.jobs.fail_stalled("test", clock.now, "lost")
                claimed = await uow.jobs.claim_next(
                    "test", clock.now, clock.now + timedelta(seconds=30)
                )
            if claimed is not None:
                claims += 1
            clock.advance(31)

        assert claims == 3
        row = await job_row(test_db, handle.job_id)
        assert row.status == JobStatus.FAILED.value
        assert row.attempts_made == 3
        assert row.last_error == "lost"

    async def test_worker_fails_job_stalled_on_last_attempt(self, test_db):
        clock = MutableClock()
        queue = make_queue(test_db, clock=clock, max_attempts=1)
        queue.register("work", lambda data: asyncio.sleep(0))
        handle = await queue.enqueue("work", {})

        async with UnitOfWork(session_factory=test_db) as uow:
            await uow.jobs.claim_next("test", clock.now, clock.now + timedelta(seconds=30))

        clock.advance(31)
        assert await queue.process_next() is None

        result = await queue.await_completion(handle, timeout=1)
        assert result.outcome == JobOutcome.FAILED
        assert result.attempts_made == 1
        assert "[stalled]" in result.error
        assert len(await queue.list_failed()) == 1

    async def test_workers_drain_queue(self, test_db):
        queue = make_queue(test_db)
        done = []

        async def handler(data):
            done.append(data["n"])

        queue.register("work", handler)
        handles = [await queue.enqueue("work", {"n": n}) for n in range(5)]

        await queue.start()
        try:
            results = await asyncio.gather(
                *(queue.await_completion(h, timeout=5) for h in handles)
            )
        finally:
            await queue.stop()

        assert all(r.succeeded for r in results)
        assert sorted(done) == [0, 1, 2, 3, 4]
        assert not queue.running
