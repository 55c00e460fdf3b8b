"""Sync state repository: watermark reads and conditional run-lease updates."""

from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update

from ledgersync.db.models.sync_state import SyncState
from ledgersync.db.repository import BaseRepository


class SyncStateRepository(BaseRepository[SyncState]):
    """
    Repository for SyncState.

    Every mutation is a single conditional UPDATE whose rowcount tells the
    caller whether it won; no read-modify-write cycles.
    """

    async def get_by_stream(self, stream_key: str) -> Optional[SyncState]:
        """Get the state row for a stream."""
        return await self.get_by_field("stream_key", stream_key)

    async def try_acquire_run(
        self,
        stream_key: str,
        run_id: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """
        Claim the stream for a run if nobody holds it or the holder's lease expired.

        Args:
            stream_key: Sync stream name
            run_id: Id of the run claiming the stream
            now: Current time, compared against the existing lease
            lease_expires_at: When this claim may be taken over

        Returns:
            True if the claim was taken
        """
        result = await self.session.execute(
            update(self.model)
            .where(
                self.model.stream_key == stream_key,
                or_(
                    self.model.run_id.is_(None),
                    self.model.lease_expires_at < now,
                ),
            )
            .values(
                run_id=run_id,
                run_started_at=now,
                lease_expires_at=lease_expires_at,
                run_total_pages=None,
            )
        )
        return (result.rowcount or 0) == 1

    async def advance_watermark(
        self, stream_key: str, run_id: str, new_sync_time: datetime
    ) -> bool:
        """
        Move the watermark forward and release the run claim in one statement.

        Only the run holding the claim may advance, and never backwards.

        Returns:
            True if the watermark was advanced
        """
        result = await self.session.execute(
            update(self.model)
            .where(
                self.model.stream_key == stream_key,
                self.model.run_id == run_id,
                self.model.last_sync_time <= new_sync_time,
            )
            .values(
                last_sync_time=new_sync_time,
                run_id=None,
                run_started_at=None,
                lease_expires_at=None,
                run_total_pages=None,
            )
        )
        return (result.rowcount or 0) == 1

    async def release_run(self, stream_key: str, run_id: str) -> bool:
        """Drop the run claim without touching the watermark."""
        result = await self.session.execute(
            update(self.model)
            .where(self.model.stream_key == stream_key, self.model.run_id == run_id)
            .values(
                run_id=None, run_started_at=None, lease_expires_at=None, run_total_pages=None
            )
        )
        return (result.rowcount or 0) == 1

    async def record_total_pages(self, stream_key: str, run_id: str, total_pages: int) -> bool:
        """Store the page count page 1 reported, if `run_id` still holds the stream."""
        result = await self.session.execute(
            update(self.model)
            .where(self.model.stream_key == stream_key, self.model.run_id == run_id)
            .values(run_total_pages=total_pages)
        )
        return (result.rowcount or 0) == 1
