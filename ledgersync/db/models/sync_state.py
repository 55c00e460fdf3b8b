"""Sync watermark and single-flight run lease."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.db.base import Base, UTCDateTime, utcnow


class SyncState(Base):
    """
    One row per sync stream.

    last_sync_time is the exclusive upper bound of already-synced time.
    run_id/lease_expires_at hold the in-flight run, if any; they are only
    ever changed with conditional updates so concurrent schedulers in
    different processes cannot both claim the stream.
    """

    __tablename__ = "sync_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_key: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, comment="Sync stream name"
    )
    last_sync_time: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, comment="Watermark"
    )

    run_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, comment="Run currently holding the stream"
    )
    run_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="After this instant a crashed run's claim may be taken over",
    )
    run_total_pages: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="Page count of the in-flight run's window"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<SyncState(stream_key={self.stream_key}, "
            f"last_sync_time={self.last_sync_time}, run_id={self.run_id})>"
        )
