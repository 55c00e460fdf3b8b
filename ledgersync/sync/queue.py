"""
Durable job queue backed by the application database.

Jobs are rows in `page_jobs`. Workers claim them with a conditional update,
run the registered handler, then either delete the row (completed), push
it back with a backoff delay (failed, attempts left) or keep it as FAILED
for operators (attempts exhausted). Any process sharing the database can
enqueue, work or await jobs.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.db.base import utcnow
from ledgersync.db.models.page_job import JobStatus
from ledgersync.db.unit_of_work import UnitOfWork
from ledgersync.sync.config import QueueConfig, RetryConfig
from ledgersync.sync.retry import classify_error, compute_backoff_delay, describe_error

logger = structlog.get_logger()

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

STALLED_ERROR = "[stalled] Worker lost the job lock on its last attempt"


class JobOutcome(str, Enum):
    """Terminal outcome of a job."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobHandle:
    """Reference to an enqueued job."""

    job_id: int
    queue_name: str
    job_name: str


@dataclass(frozen=True)
class JobResult:
    """What await_completion (or a worker) observed for a job."""

    handle: JobHandle
    outcome: JobOutcome
    attempts_made: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == JobOutcome.COMPLETED


class JobNotFoundError(Exception):
    """Raised when an operator action targets a job that is not retained."""

    pass


class JobTimeoutError(Exception):
    """Raised when a job did not finish within the awaited time."""

    pass


class JobQueue:
    """
    Bounded-concurrency queue with retry and exponential backoff.

    Completed jobs are discarded; jobs that exhaust their attempts stay in
    the table with status FAILED until an operator retries them.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        retry: Optional[RetryConfig] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the queue.

        Args:
            config: Queue/worker settings
            retry: Default attempt budget and backoff for enqueued jobs
            session_factory: Session factory (defaults to the application's)
            clock: UTC clock, injectable for tests
        """
        self.config = config or QueueConfig()
        self.retry = retry or RetryConfig()
        self.name = self.config.name
        self._session_factory = session_factory
        self._clock = clock
        self._handlers: Dict[str, JobHandler] = {}
        self._workers: List[asyncio.Task] = []
        self._running = False

    def _uow(self) -> UnitOfWork:
        return UnitOfWork(session_factory=self._session_factory)

    def register(self, job_name: str, handler: JobHandler) -> None:
        """Register the coroutine that processes jobs named `job_name`."""
        self._handlers[job_name] = handler

    async def enqueue(
        self,
        job_name: str,
        data: Dict[str, Any],
        attempts: Optional[int] = None,
        backoff_delay: Optional[float] = None,
        backoff_multiplier: Optional[float] = None,
        dedup_key: Optional[str] = None,
    ) -> JobHandle:
        """
        Add a job to the queue.

        Args:
            job_name: Handler name
            data: JSON-serializable job data
            attempts: Attempt budget (defaults to RetryConfig.max_attempts)
            backoff_delay: Delay before the first retry
            backoff_multiplier: Factor applied to the delay on each retry
            dedup_key: Optional unique name; enqueueing an existing name
                returns the existing job's handle

        Returns:
            Handle for await_completion
        """
        values = dict(
            queue_name=self.name,
            job_name=job_name,
            dedup_key=dedup_key,
            payload=json.dumps(data, default=str),
            status=JobStatus.WAITING.value,
            attempts_made=0,
            max_attempts=attempts or self.retry.max_attempts,
            backoff_delay=(
                backoff_delay if backoff_delay is not None else self.retry.initial_delay
            ),
            backoff_multiplier=backoff_multiplier or self.retry.exponential_base,
            available_at=self._clock(),
        )

        if dedup_key is not None:
            existing = await self._find_by_dedup_key(dedup_key)
            if existing is not None:
                logger.info("queue.job.deduplicated", job_id=existing.job_id, dedup_key=dedup_key)
                return existing

        try:
            async with self._uow() as uow:
                job = await uow.jobs.create(**values)
                job_id = job.id
        except IntegrityError:
            # Lost a race with another producer using the same dedup_key
            existing = await self._find_by_dedup_key(dedup_key) if dedup_key else None
            if existing is None:
                raise
            return existing

        logger.debug(
            "queue.job.enqueued",
            queue=self.name,
            job_id=job_id,
            job_name=job_name,
            max_attempts=values["max_attempts"],
        )
        return JobHandle(job_id=job_id, queue_name=self.name, job_name=job_name)

    async def _find_by_dedup_key(self, dedup_key: str) -> Optional[JobHandle]:
        async with self._uow() as uow:
            job = await uow.jobs.get_by_dedup_key(dedup_key)
            if job is None:
                return None
            return JobHandle(job_id=job.id, queue_name=job.queue_name, job_name=job.job_name)

    async def get_result(self, handle: JobHandle) -> Optional[JobResult]:
        """Return the terminal result if the job has finished, else None."""
        async with self._uow() as uow:
            job = await uow.jobs.get_by_id(handle.job_id)
            if job is None:
                return JobResult(handle=handle, outcome=JobOutcome.COMPLETED)
            if job.status == JobStatus.FAILED.value:
                return JobResult(
                    handle=handle,
                    outcome=JobOutcome.FAILED,
                    attempts_made=job.attempts_made,
                    error=job.last_error,
                )
            return None

    async def await_completion(
        self, handle: JobHandle, timeout: Optional[float] = None
    ) -> JobResult:
        """
        Wait until a job completes or exhausts its attempts.

        Args:
            handle: Handle returned by enqueue
            timeout: Seconds to wait before raising JobTimeoutError

        Returns:
            JobResult with COMPLETED or FAILED outcome
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while True:
            result = await self.get_result(handle)
            if result is not None:
                return result
            if deadline is not None and loop.time() >= deadline:
                raise JobTimeoutError(
                    f"Job {handle.job_id} did not finish within {timeout}s"
                )
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def process_next(self) -> Optional[JobResult]:
        """
        Claim and run one ready job.

        Returns:
            The job's result if it reached a terminal state; None if nothing
            was ready or the job was scheduled for another attempt
        """
        now = self._clock()
        async with self._uow() as uow:
            stalled_out = await uow.jobs.fail_stalled(self.name, now, STALLED_ERROR)
            for stalled_id in stalled_out:
                logger.error("queue.job.stalled_out", queue=self.name, job_id=stalled_id)
            job = await uow.jobs.claim_next(
                self.name, now, now + timedelta(seconds=self.config.lock_seconds)
            )
            if job is None:
                return None
            job_id = job.id
            job_name = job.job_name
            attempts_made = job.attempts_made
            max_attempts = job.max_attempts
            backoff_delay = job.backoff_delay
            backoff_multiplier = job.backoff_multiplier
            data = json.loads(job.payload)

        handle = JobHandle(job_id=job_id, queue_name=self.name, job_name=job_name)
        attempt = attempts_made + 1
        log = logger.bind(queue=self.name, job_id=job_id, job_name=job_name, attempt=attempt)

        try:
            handler = self._handlers.get(job_name)
            if handler is None:
                raise LookupError(f"No handler registered for job '{job_name}'")
            await handler(data)
        except Exception as e:
            error = describe_error(e)
            if attempt < max_attempts:
                delay = compute_backoff_delay(
                    backoff_delay,
                    backoff_multiplier,
                    attempt,
                    max_delay=self.retry.max_delay,
                    jitter=self.retry.jitter,
                )
                async with self._uow() as uow:
                    await uow.jobs.schedule_retry(
                        job_id, attempt, self._clock() + timedelta(seconds=delay), error
                    )
                log.warning(
                    "queue.job.retry_scheduled",
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error_kind=classify_error(e),
                    error=str(e),
                )
                return None

            async with self._uow() as uow:
                await uow.jobs.mark_failed(job_id, attempt, error, self._clock())
            log.error(
                "queue.job.failed",
                max_attempts=max_attempts,
                error_kind=classify_error(e),
                error=str(e),
            )
            return JobResult(
                handle=handle, outcome=JobOutcome.FAILED, attempts_made=attempt, error=error
            )

        async with self._uow() as uow:
            await uow.jobs.remove(job_id)
        log.debug("queue.job.completed")
        return JobResult(handle=handle, outcome=JobOutcome.COMPLETED, attempts_made=attempt)

    async def start(self) -> None:
        """Start `concurrency` worker tasks in this process."""
        if self._running:
            logger.warning("queue.already_running", queue=self.name)
            return

        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(worker_id))
            for worker_id in range(self.config.concurrency)
        ]
        logger.info("queue.started", queue=self.name, concurrency=self.config.concurrency)

    async def stop(self) -> None:
        """Stop the workers; a job interrupted mid-run is picked up again once its lock expires."""
        if not self._running:
            return

        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("queue.stopped", queue=self.name)

    @property
    def running(self) -> bool:
        return self._running

    async def _worker_loop(self, worker_id: int) -> None:
        while self._running:
            try:
                result = await self.process_next()
                if result is None:
                    await asyncio.sleep(self.config.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "queue.worker_error",
                    queue=self.name,
                    worker_id=worker_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(self.config.poll_interval_seconds)

    async def list_failed(self, limit: Optional[int] = 50) -> List[Dict[str, Any]]:
        """Failed jobs retained for inspection, newest first."""
        async with self._uow() as uow:
            jobs = await uow.jobs.list_failed(self.name, limit)
            return [
                {
                    "job_id": job.id,
                    "job_name": job.job_name,
                    "data": json.loads(job.payload),
                    "attempts_made": job.attempts_made,
                    "max_attempts": job.max_attempts,
                    "last_error": job.last_error,
                    "finished_at": job.finished_at.isoformat() if job.finished_at else None,
                }
                for job in jobs
            ]

    async def retry_job(self, job_id: int) -> JobHandle:
        """
        Requeue a retained failed job with a fresh attempt budget.

        Raises:
            JobNotFoundError: If no failed job with this id exists
        """
        async with self._uow() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None or job.queue_name != self.name:
                raise JobNotFoundError(f"Job {job_id} not found")
            if not await uow.jobs.requeue_failed(job_id, self._clock()):
                raise JobNotFoundError(f"Job {job_id} is not in failed state")
            handle = JobHandle(job_id=job.id, queue_name=job.queue_name, job_name=job.job_name)

        logger.info("queue.job.requeued", queue=self.name, job_id=job_id)
        return handle

    async def get_counts(self) -> Dict[str, int]:
        """Number of retained jobs per status."""
        async with self._uow() as uow:
            return {
                status.value: await uow.jobs.count(queue_name=self.name, status=status.value)
                for status in JobStatus
            }
