"""Ledger transaction model for records synced from the transaction source."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.db.base import Base, UTCDateTime, utcnow


class TransactionKind(str, Enum):
    """Kinds of ledger movement reported by the source."""

    EARNED = "earned"
    SPENT = "spent"
    PAYOUT = "payout"


class LedgerTransaction(Base):
    """
    Append-only store of transactions pulled from the external source.

    Rows are never updated or deleted. The source-assigned natural_id is
    unique, so re-syncing a window is a no-op for rows already present.
    """

    __tablename__ = "ledger_transactions"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Transaction identification
    natural_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="Source-assigned transaction id",
    )
    user_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True, comment="Owning user"
    )

    # Transaction details
    kind: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="earned, spent or payout"
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), nullable=False, comment="Non-negative amount"
    )

    # Timestamps
    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        index=True,
        comment="When the transaction happened at the source",
    )
    synced_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="When this row was written by the sync engine",
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_ledger_amount_non_negative"),
        Index("idx_ledger_kind_user", "kind", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction(natural_id={self.natural_id}, user_id={self.user_id}, "
            f"kind={self.kind}, amount={self.amount})>"
        )
