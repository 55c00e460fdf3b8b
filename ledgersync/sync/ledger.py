"""
Idempotent ledger writes.

The ledger is append-only and keyed by the source's natural_id. Writing a
record that is already present is counted as a duplicate and otherwise
ignored, which is what makes re-running a sync window safe.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.db.unit_of_work import UnitOfWork
from ledgersync.sync.clients.base import TransactionRecord

logger = structlog.get_logger()


class LedgerWriteError(Exception):
    """Raised when a ledger write fails for a reason other than a duplicate key."""

    pass


class DuplicateRecordError(Exception):
    """A record with this natural_id is already in the ledger."""

    def __init__(self, natural_id: str):
        super().__init__(f"Transaction {natural_id} already synced")
        self.natural_id = natural_id


@dataclass(frozen=True)
class UpsertResult:
    """Counts from one upsert_batch call."""

    inserted: int = 0
    duplicates: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"inserted": self.inserted, "duplicates": self.duplicates}


def _to_row(record: TransactionRecord) -> dict:
    return {
        "natural_id": record.natural_id,
        "user_id": record.user_id,
        "occurred_at": record.occurred_at,
        "kind": record.kind.value,
        "amount": record.amount,
    }


class Ledger:
    """Append-only, idempotent-by-key store of transaction records."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Args:
            session_factory: Session factory (defaults to the application's)
        """
        self._session_factory = session_factory

    async def upsert_batch(self, records: Sequence[TransactionRecord]) -> UpsertResult:
        """
        Insert records, skipping any natural_id already stored.

        The batch is first written in one transaction. If a concurrent writer
        inserted some of the same ids in between, the batch falls back to
        record-by-record inserts so only the colliding rows are skipped.

        Args:
            records: Normalized records from one source page

        Returns:
            UpsertResult with inserted and duplicate counts

        Raises:
            LedgerWriteError: On any failure other than a duplicate key
        """
        if not records:
            return UpsertResult()

        started = time.perf_counter()

        unique: Dict[str, TransactionRecord] = {}
        for record in records:
            unique.setdefault(record.natural_id, record)
        in_batch_duplicates = len(records) - len(unique)

        try:
            result = await self._write_batch(list(unique.values()))
        except IntegrityError:
            logger.info("ledger.batch_conflict", count=len(unique))
            result = await self._write_one_by_one(list(unique.values()))
        except SQLAlchemyError as e:
            logger.error("ledger.batch_failed", count=len(unique), error=str(e))
            raise LedgerWriteError(f"Ledger batch write failed: {e}") from e

        result = UpsertResult(
            inserted=result.inserted, duplicates=result.duplicates + in_batch_duplicates
        )
        if result.duplicates:
            logger.info("ledger.duplicates_skipped", duplicates=result.duplicates)

        logger.info(
            "ledger.batch_committed",
            total=len(records),
            inserted=result.inserted,
            duplicates=result.duplicates,
            latency_seconds=round(time.perf_counter() - started, 4),
        )
        return result

    async def _write_batch(self, records: List[TransactionRecord]) -> UpsertResult:
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            existing = await uow.transactions.get_existing_natural_ids(
                r.natural_id for r in records
            )
            fresh = [_to_row(r) for r in records if r.natural_id not in existing]
            if fresh:
                await uow.transactions.add_many(fresh)
        return UpsertResult(inserted=len(fresh), duplicates=len(existing))

    async def _write_one_by_one(self, records: List[TransactionRecord]) -> UpsertResult:
        inserted = 0
        duplicates = 0
        for record in records:
            try:
                await self._insert_one(record)
                inserted += 1
            except DuplicateRecordError as e:
                duplicates += 1
                logger.debug("ledger.duplicate", natural_id=e.natural_id)
        return UpsertResult(inserted=inserted, duplicates=duplicates)

    async def _insert_one(self, record: TransactionRecord) -> None:
        """Insert a single record; raises DuplicateRecordError if it already exists."""
        try:
            async with UnitOfWork(session_factory=self._session_factory) as uow:
                if await uow.transactions.get_by_natural_id(record.natural_id):
                    raise DuplicateRecordError(record.natural_id)
                await uow.transactions.create(**_to_row(record))
        except IntegrityError as e:
            async with UnitOfWork(session_factory=self._session_factory) as uow:
                if await uow.transactions.get_by_natural_id(record.natural_id):
                    raise DuplicateRecordError(record.natural_id) from e
            raise LedgerWriteError(
                f"Failed to write transaction {record.natural_id}: {e}"
            ) from e
        except SQLAlchemyError as e:
            raise LedgerWriteError(
                f"Failed to write transaction {record.natural_id}: {e}"
            ) from e

    async def count(self) -> int:
        """Number of rows in the ledger."""
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            return await uow.transactions.count()
