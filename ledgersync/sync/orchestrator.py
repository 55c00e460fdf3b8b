"""
Sync orchestrator.

One call to run_once() is one tick of the sync engine: claim the stream,
read the watermark, sync page 1 of the window [watermark, now) as a queued
job, fan the remaining pages out as further jobs, wait for all of them and
only then move the watermark to `now`. Every page, the first included, gets
the job retry budget and backoff. Any failure leaves the watermark where it
was, so the next tick re-syncs the same window; the idempotent ledger
absorbs the rows that were already written.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.db.base import utcnow
from ledgersync.db.unit_of_work import UnitOfWork
from ledgersync.sync.config import SyncConfig
from ledgersync.sync.fetcher import PageFetcher
from ledgersync.sync.ledger import Ledger
from ledgersync.sync.metrics import RunStatus, SyncMetrics
from ledgersync.sync.queue import JobHandle, JobQueue, JobResult
from ledgersync.sync.retry import describe_error

logger = structlog.get_logger()

PAGE_JOB_NAME = "sync-transactions-page"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SyncPhase(str, Enum):
    """Where the orchestrator is within a run."""

    IDLE = "idle"
    FETCHING_FIRST_PAGE = "fetching_first_page"
    FANNING_OUT = "fanning_out"
    AWAITING_PAGE_JOBS = "awaiting_page_jobs"
    ADVANCING_WATERMARK = "advancing_watermark"
    FAILED = "failed"


class PageJobData(BaseModel):
    """Payload of one page job."""

    start_date: datetime
    end_date: datetime
    page: int = Field(ge=1)
    parent_run_id: str


class PageJobsFailedError(Exception):
    """One or more page jobs of a run ended in failure."""

    def __init__(self, failures: List[str]):
        super().__init__(f"{len(failures)} page job(s) failed: {'; '.join(failures)}")
        self.failures = failures


class WatermarkConflictError(Exception):
    """The run lost its claim on the stream before it could advance the watermark."""

    pass


class SyncOrchestrator:
    """
    Drives incremental sync runs for one stream.

    Runs never overlap: the stream is claimed with a conditional update on
    its sync_state row (with a lease so a crashed process cannot hold it
    forever), which works across processes and restarts.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        queue: JobQueue,
        ledger: Optional[Ledger] = None,
        config: Optional[SyncConfig] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the orchestrator and register its page-job handler.

        Args:
            fetcher: Throttled page fetcher
            queue: Queue that page jobs are fanned out to
            ledger: Ledger the pages are written to
            config: Sync configuration
            session_factory: Session factory (defaults to the application's)
            clock: UTC clock, injectable for tests
        """
        self.fetcher = fetcher
        self.queue = queue
        self.ledger = ledger or Ledger(session_factory=session_factory)
        self.config = config or SyncConfig()
        self.metrics = SyncMetrics()
        self.phase = SyncPhase.IDLE
        self._session_factory = session_factory
        self._clock = clock
        self._last_result: Optional[Dict[str, Any]] = None

        self.queue.register(PAGE_JOB_NAME, self.process_page_job)

    def _uow(self) -> UnitOfWork:
        return UnitOfWork(session_factory=self._session_factory)

    def _transition(self, phase: SyncPhase, run_id: str) -> None:
        logger.debug("sync.phase", run_id=run_id, phase=phase.value, previous=self.phase.value)
        self.phase = phase

    async def _ensure_stream(self) -> None:
        """Create the stream's state row at the epoch if it does not exist yet."""
        try:
            async with self._uow() as uow:
                if await uow.sync_state.get_by_stream(self.config.stream_key) is None:
                    await uow.sync_state.create(
                        stream_key=self.config.stream_key, last_sync_time=EPOCH
                    )
                    logger.info("sync.stream_created", stream_key=self.config.stream_key)
        except IntegrityError:
            # Another process created it first
            pass

    async def get_watermark(self) -> datetime:
        """Current last_sync_time for the stream (epoch if never synced)."""
        async with self._uow() as uow:
            state = await uow.sync_state.get_by_stream(self.config.stream_key)
            return state.last_sync_time if state else EPOCH

    async def get_state(self) -> Dict[str, Any]:
        """Watermark and in-flight run as stored."""
        async with self._uow() as uow:
            state = await uow.sync_state.get_by_stream(self.config.stream_key)
            if state is None:
                return {"stream_key": self.config.stream_key, "last_sync_time": None}
            return {
                "stream_key": state.stream_key,
                "last_sync_time": state.last_sync_time.isoformat(),
                "run_id": state.run_id,
                "run_started_at": (
                    state.run_started_at.isoformat() if state.run_started_at else None
                ),
                "lease_expires_at": (
                    state.lease_expires_at.isoformat() if state.lease_expires_at else None
                ),
            }

    async def _try_acquire(self, run_id: str, now: datetime) -> bool:
        async with self._uow() as uow:
            return await uow.sync_state.try_acquire_run(
                self.config.stream_key, run_id, now, now + self.config.get_run_lease()
            )

    async def _release(self, run_id: str) -> None:
        try:
            async with self._uow() as uow:
                await uow.sync_state.release_run(self.config.stream_key, run_id)
        except Exception as e:
            # The lease expiry frees the stream eventually
            logger.error("sync.release_failed", run_id=run_id, error=str(e))

    async def run_once(self) -> Dict[str, Any]:
        """
        Execute one sync run.

        Returns:
            Dictionary describing the run: status is success, failed or skipped
        """
        now = self._clock()
        run_id = f"sync-{now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"

        await self._ensure_stream()
        if not await self._try_acquire(run_id, now):
            logger.info("sync.run.skipped", run_id=run_id, reason="run_in_flight")
            self.metrics.start_run(run_id)
            self.metrics.end_run(run_id, RunStatus.SKIPPED)
            return {"run_id": run_id, "status": RunStatus.SKIPPED.value}

        run = self.metrics.start_run(run_id)
        window_start: Optional[datetime] = None
        window_end = now

        try:
            window_start = await self.get_watermark()
            run.window_start, run.window_end = window_start, window_end
            logger.info(
                "sync.run.started",
                run_id=run_id,
                window_start=window_start.isoformat(),
                window_end=window_end.isoformat(),
            )
            timeout = self.config.page_jobs_timeout_seconds
            deadline = (
                asyncio.get_running_loop().time() + timeout if timeout is not None else None
            )

            self._transition(SyncPhase.FETCHING_FIRST_PAGE, run_id)
            first = await self._enqueue_page(window_start, window_end, 1, run_id)
            failures = await self._await_pages([first], deadline)
            if failures:
                run.pages_failed = len(failures)
                raise PageJobsFailedError(failures)
            total_pages = await self._get_total_pages(run_id)
            run.total_pages = total_pages

            self._transition(SyncPhase.FANNING_OUT, run_id)
            handles = [
                await self._enqueue_page(window_start, window_end, page, run_id)
                for page in range(2, total_pages + 1)
            ]
            logger.info("sync.run.fanned_out", run_id=run_id, page_jobs=len(handles))

            self._transition(SyncPhase.AWAITING_PAGE_JOBS, run_id)
            failures = await self._await_pages(handles, deadline)
            run.pages_failed = len(failures)
            if failures:
                raise PageJobsFailedError(failures)

            self._transition(SyncPhase.ADVANCING_WATERMARK, run_id)
            async with self._uow() as uow:
                advanced = await uow.sync_state.advance_watermark(
                    self.config.stream_key, run_id, window_end
                )
            if not advanced:
                raise WatermarkConflictError(
                    f"Run {run_id} no longer holds stream {self.config.stream_key}"
                )

        except Exception as e:
            error = describe_error(e)
            self._transition(SyncPhase.FAILED, run_id)
            logger.error(
                "sync.run.failed",
                run_id=run_id,
                window_start=window_start.isoformat() if window_start else None,
                error=error,
                error_type=type(e).__name__,
            )
            self.metrics.record_error(run_id, error)
            await self._release(run_id)
            finished = self.metrics.end_run(run_id, RunStatus.FAILED)
            result = {
                "run_id": run_id,
                "status": RunStatus.FAILED.value,
                "error": error,
                "watermark": window_start.isoformat() if window_start else None,
                "duration_seconds": finished.duration_seconds if finished else 0,
            }
            self._last_result = result
            return result

        self._transition(SyncPhase.IDLE, run_id)
        finished = self.metrics.end_run(run_id, RunStatus.SUCCESS)
        result = {
            "run_id": run_id,
            "status": RunStatus.SUCCESS.value,
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
            "total_pages": run.total_pages,
            "records_fetched": run.records_fetched,
            "records_inserted": run.records_inserted,
            "records_duplicate": run.records_duplicate,
            "watermark": window_end.isoformat(),
            "duration_seconds": finished.duration_seconds if finished else 0,
        }
        logger.info("sync.run.completed", **result)
        self._last_result = result
        return result

    async def _enqueue_page(
        self, start_date: datetime, end_date: datetime, page: int, run_id: str
    ) -> JobHandle:
        data = PageJobData(
            start_date=start_date, end_date=end_date, page=page, parent_run_id=run_id
        )
        return await self.queue.enqueue(
            PAGE_JOB_NAME,
            data.model_dump(mode="json"),
            attempts=self.config.retry.max_attempts,
            backoff_delay=self.config.retry.initial_delay,
            backoff_multiplier=self.config.retry.exponential_base,
            dedup_key=f"{run_id}:page:{page}",
        )

    async def _await_pages(
        self, handles: List[JobHandle], deadline: Optional[float]
    ) -> List[str]:
        """Wait for page jobs until the run's deadline; return one line per failed job."""
        remaining = None
        if deadline is not None:
            remaining = max(deadline - asyncio.get_running_loop().time(), 0)
        results: List[JobResult] = await asyncio.gather(
            *(self.queue.await_completion(h, timeout=remaining) for h in handles)
        )
        return [f"job {r.handle.job_id}: {r.error}" for r in results if not r.succeeded]

    async def _get_total_pages(self, run_id: str) -> int:
        """Page count stored by the page-1 job of this run."""
        async with self._uow() as uow:
            state = await uow.sync_state.get_by_stream(self.config.stream_key)
            if state is None or state.run_id != run_id or state.run_total_pages is None:
                raise WatermarkConflictError(
                    f"Run {run_id} no longer holds stream {self.config.stream_key}"
                )
            return state.run_total_pages

    async def _sync_page(
        self, start_date: datetime, end_date: datetime, page: int, run_id: str
    ) -> int:
        """Fetch one page, write it to the ledger, return the window's page count."""
        records, meta = await self.fetcher.fetch_page(start_date, end_date, page)
        result = await self.ledger.upsert_batch(records)
        self.metrics.record_page(
            run_id, fetched=len(records), inserted=result.inserted, duplicates=result.duplicates
        )
        logger.info(
            "sync.page.synced",
            run_id=run_id,
            page=page,
            total_pages=meta.total_pages,
            inserted=result.inserted,
            duplicates=result.duplicates,
        )
        return meta.total_pages

    async def process_page_job(self, data: Dict[str, Any]) -> None:
        """
        Queue handler for one page of a run.

        Page 1 also stores the window's page count on the stream row, where
        the waiting run picks it up to fan out the remaining pages.
        """
        job = PageJobData.model_validate(data)
        total_pages = await self._sync_page(
            job.start_date, job.end_date, job.page, job.parent_run_id
        )
        if job.page != 1:
            return

        async with self._uow() as uow:
            recorded = await uow.sync_state.record_total_pages(
                self.config.stream_key, job.parent_run_id, total_pages
            )
        if not recorded:
            logger.warning(
                "sync.page.run_not_holding_stream", run_id=job.parent_run_id, page=job.page
            )

    def get_status(self) -> Dict[str, Any]:
        """In-process view of the orchestrator for status endpoints."""
        last_run = self.metrics.get_last_run()
        return {
            "phase": self.phase.value,
            "last_result": self._last_result,
            "last_run": last_run.to_dict() if last_run else None,
            "metrics_24h": self.metrics.get_aggregate_metrics(hours=24).to_dict(),
            "success_rate_24h": self.metrics.get_success_rate(hours=24),
            "recent_runs": [r.to_dict() for r in self.metrics.get_history(limit=10)],
        }
