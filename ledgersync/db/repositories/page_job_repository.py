"""Queue job repository with atomic claim and state transitions."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, case, delete, or_, select, update

from ledgersync.db.models.page_job import JobStatus, PageJob
from ledgersync.db.repository import BaseRepository


class PageJobRepository(BaseRepository[PageJob]):
    """Repository for PageJob rows."""

    async def get_by_id(self, job_id: int) -> Optional[PageJob]:
        """Get a job by primary key."""
        return await self.get_by_field("id", job_id)

    async def get_by_dedup_key(self, dedup_key: str) -> Optional[PageJob]:
        """Get a job by its deduplication key."""
        return await self.get_by_field("dedup_key", dedup_key)

    def _stalled(self, queue_name: str, now: datetime):
        # The worker holding it died before finishing
        return and_(
            self.model.queue_name == queue_name,
            self.model.status == JobStatus.ACTIVE.value,
            self.model.locked_until < now,
        )

    def _claimable(self, queue_name: str, now: datetime):
        return or_(
            and_(
                self.model.queue_name == queue_name,
                self.model.status == JobStatus.WAITING.value,
                self.model.available_at <= now,
            ),
            and_(
                self._stalled(queue_name, now),
                self.model.attempts_made + 1 < self.model.max_attempts,
            ),
        )

    async def fail_stalled(self, queue_name: str, now: datetime, error: str) -> List[int]:
        """
        Retain stalled jobs whose lost attempt was their last one as FAILED.

        Returns:
            Ids of the jobs that were failed
        """
        exhausted = and_(
            self._stalled(queue_name, now),
            self.model.attempts_made + 1 >= self.model.max_attempts,
        )
        candidates = await self.session.execute(select(self.model.id).where(exhausted))
        failed = []
        for job_id in candidates.scalars().all():
            result = await self.session.execute(
                update(self.model)
                .where(self.model.id == job_id, exhausted)
                .values(
                    attempts_made=self.model.attempts_made + 1,
                    status=JobStatus.FAILED.value,
                    locked_until=None,
                    last_error=error,
                    finished_at=now,
                )
            )
            if (result.rowcount or 0) == 1:
                failed.append(job_id)
        return failed

    async def claim_next(
        self, queue_name: str, now: datetime, locked_until: datetime
    ) -> Optional[PageJob]:
        """
        Atomically move the oldest claimable job to ACTIVE.

        A candidate is re-checked inside the UPDATE, so two workers racing for
        the same row cannot both claim it; the loser moves on to the next one.
        Reclaiming a stalled job counts its lost run as an attempt.

        Args:
            queue_name: Queue to claim from
            now: Current time
            locked_until: Lock expiry written on the claimed row

        Returns:
            The claimed job, or None if nothing is ready
        """
        candidates = await self.session.execute(
            select(self.model.id)
            .where(self._claimable(queue_name, now))
            .order_by(self.model.available_at.asc(), self.model.id.asc())
            .limit(5)
        )
        for job_id in candidates.scalars().all():
            result = await self.session.execute(
                update(self.model)
                .where(self.model.id == job_id, self._claimable(queue_name, now))
                .values(
                    attempts_made=case(
                        (
                            self.model.status == JobStatus.ACTIVE.value,
                            self.model.attempts_made + 1,
                        ),
                        else_=self.model.attempts_made,
                    ),
                    status=JobStatus.ACTIVE.value,
                    locked_until=locked_until,
                )
            )
            if (result.rowcount or 0) == 1:
                return await self.get_by_id(job_id)
        return None

    async def schedule_retry(
        self, job_id: int, attempts_made: int, available_at: datetime, error: str
    ) -> None:
        """Put a failed job back to WAITING until its backoff has elapsed."""
        await self.session.execute(
            update(self.model)
            .where(self.model.id == job_id)
            .values(
                status=JobStatus.WAITING.value,
                attempts_made=attempts_made,
                available_at=available_at,
                locked_until=None,
                last_error=error,
            )
        )

    async def mark_failed(
        self, job_id: int, attempts_made: int, error: str, finished_at: datetime
    ) -> None:
        """Retain a job that exhausted its attempts."""
        await self.session.execute(
            update(self.model)
            .where(self.model.id == job_id)
            .values(
                status=JobStatus.FAILED.value,
                attempts_made=attempts_made,
                locked_until=None,
                last_error=error,
                finished_at=finished_at,
            )
        )

    async def remove(self, job_id: int) -> bool:
        """Delete a completed job."""
        result = await self.session.execute(
            delete(self.model).where(self.model.id == job_id)
        )
        return (result.rowcount or 0) > 0

    async def list_failed(self, queue_name: str, limit: Optional[int] = None) -> List[PageJob]:
        """
        Get retained failed jobs, newest first.

        Args:
            queue_name: Queue to inspect
            limit: Maximum number of jobs to return

        Returns:
            List of failed jobs
        """
        query = (
            select(self.model)
            .where(
                self.model.queue_name == queue_name,
                self.model.status == JobStatus.FAILED.value,
            )
            .order_by(self.model.finished_at.desc(), self.model.id.desc())
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def requeue_failed(self, job_id: int, now: datetime) -> bool:
        """Reset a failed job to WAITING with a fresh attempt budget."""
        result = await self.session.execute(
            update(self.model)
            .where(self.model.id == job_id, self.model.status == JobStatus.FAILED.value)
            .values(
                status=JobStatus.WAITING.value,
                attempts_made=0,
                available_at=now,
                finished_at=None,
            )
        )
        return (result.rowcount or 0) == 1
