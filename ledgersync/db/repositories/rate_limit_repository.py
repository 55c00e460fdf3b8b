"""Rate-limit log repository."""

from datetime import datetime

from sqlalchemy import delete, func, select

from ledgersync.db.models.rate_limit import RateLimitHit, RateLimitWindow
from ledgersync.db.repository import BaseRepository


class RateLimitRepository(BaseRepository[RateLimitHit]):
    """Repository for the sliding-window request log."""

    async def record_hit(self, key: str, hit_at: float) -> None:
        """Append an attempted request to the key's log."""
        self.session.add(self.model(key=key, hit_at=hit_at))
        await self.session.flush()

    async def prune_before(self, key: str, cutoff: float) -> int:
        """Drop entries that fell out of the window."""
        result = await self.session.execute(
            delete(self.model).where(self.model.key == key, self.model.hit_at <= cutoff)
        )
        return result.rowcount or 0

    async def count_hits(self, key: str) -> int:
        """Count entries currently in the key's log."""
        result = await self.session.execute(
            select(func.count()).select_from(self.model).where(self.model.key == key)
        )
        return result.scalar() or 0

    async def refresh_expiry(self, key: str, expires_at: datetime) -> None:
        """Set (or create) the key's expiry."""
        await self.session.merge(RateLimitWindow(key=key, expires_at=expires_at))
        await self.session.flush()

    async def purge_expired(self, now: datetime) -> int:
        """Remove keys whose expiry passed, together with their logs."""
        expired = select(RateLimitWindow.key).where(RateLimitWindow.expires_at < now)
        await self.session.execute(delete(self.model).where(self.model.key.in_(expired)))
        result = await self.session.execute(
            delete(RateLimitWindow).where(RateLimitWindow.expires_at < now)
        )
        return result.rowcount or 0
