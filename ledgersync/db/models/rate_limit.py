"""Sliding-window log storage for the rate limiter."""

from datetime import datetime

from sqlalchemy import Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.db.base import Base, UTCDateTime


class RateLimitWindow(Base):
    """Per-key expiry; a key whose expiry passes is dropped with its hits."""

    __tablename__ = "rate_limit_windows"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)


class RateLimitHit(Base):
    """One attempted request (admitted or not) under a limiter key."""

    __tablename__ = "rate_limit_hits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    hit_at: Mapped[float] = mapped_column(
        Float, nullable=False, comment="Epoch seconds of the attempt"
    )

    __table_args__ = (Index("idx_rate_limit_key_hit", "key", "hit_at"),)
