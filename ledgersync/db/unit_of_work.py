"""Unit of Work pattern for managing database transactions."""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.db import base as db_base
from ledgersync.db.models import LedgerTransaction, PageJob, RateLimitHit, SyncState
from ledgersync.db.repositories import (
    PageJobRepository,
    RateLimitRepository,
    SyncStateRepository,
    TransactionRepository,
)


class UnitOfWork:
    """
    Unit of Work pattern implementation for managing database transactions.

    This class provides a single entry point for all repository operations
    and ensures that all operations within a context share the same database
    session and transaction.

    Usage:
        async with UnitOfWork() as uow:
            existing = await uow.transactions.get_existing_natural_ids(ids)
            await uow.transactions.add_many(rows)
            await uow.commit()
    """

    def __init__(
        self,
        session: Optional[AsyncSession] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize Unit of Work.

        Args:
            session: Optional existing session (caller keeps ownership)
            session_factory: Factory for an owned session; defaults to the
                module-level AsyncSessionLocal at enter time
        """
        self._session = session
        self._session_factory = session_factory
        self._owned_session = session is None

        # Repositories (initialized in __aenter__)
        self.transactions: TransactionRepository = None  # type: ignore
        self.sync_state: SyncStateRepository = None  # type: ignore
        self.jobs: PageJobRepository = None  # type: ignore
        self.rate_limits: RateLimitRepository = None  # type: ignore

    async def __aenter__(self):
        """Enter async context manager."""
        if self._owned_session:
            factory = self._session_factory or db_base.AsyncSessionLocal
            self._session = factory()

        assert self._session is not None, "Session must be initialized"
        self.transactions = TransactionRepository(LedgerTransaction, self._session)
        self.sync_state = SyncStateRepository(SyncState, self._session)
        self.jobs = PageJobRepository(PageJob, self._session)
        self.rate_limits = RateLimitRepository(RateLimitHit, self._session)

        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        try:
            if exc_type is not None:
                await self.rollback()
            elif self._owned_session:
                await self.commit()
        finally:
            if self._owned_session and self._session:
                await self._session.close()

    @property
    def session(self) -> AsyncSession:
        assert self._session is not None, "UnitOfWork used outside its context"
        return self._session

    async def commit(self):
        """Commit the current transaction."""
        if self._session:
            await self._session.commit()

    async def rollback(self):
        """Rollback the current transaction."""
        if self._session:
            await self._session.rollback()

    async def flush(self):
        """Flush pending changes to the database without committing."""
        if self._session:
            await self._session.flush()
