"""Durable job rows backing the page-job queue."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.db.base import Base, UTCDateTime, utcnow


class JobStatus(str, Enum):
    """Lifecycle of a queued job. Completed jobs are deleted, not kept."""

    WAITING = "waiting"
    ACTIVE = "active"
    FAILED = "failed"


class PageJob(Base):
    """A unit of queued work, e.g. one page of a sync window."""

    __tablename__ = "page_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    dedup_key: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True, comment="Named-job deduplication key"
    )
    payload: Mapped[str] = mapped_column(Text, nullable=False, comment="JSON job data")

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.WAITING.value
    )
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_delay: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    backoff_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)

    available_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest next attempt"
    )
    locked_until: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, comment="Worker lock; expired locks mark stalled jobs"
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_page_jobs_claim", "queue_name", "status", "available_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PageJob(id={self.id}, job_name={self.job_name}, status={self.status}, "
            f"attempts={self.attempts_made}/{self.max_attempts})>"
        )
