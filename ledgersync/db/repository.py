"""Base repository class with common CRUD operations."""

from typing import Generic, TypeVar, Type, Optional, Any
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository providing common operations for all models.

    This class implements the repository pattern, providing a clean
    abstraction over database operations with transaction support.
    Transaction control (commit/rollback) belongs to the UnitOfWork.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    async def create(self, **kwargs) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            Created model instance
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Get a record by a specific field value.

        Args:
            field_name: Name of the field to search
            value: Value to search for

        Returns:
            Model instance or None if not found
        """
        field = getattr(self.model, field_name)
        result = await self.session.execute(select(self.model).where(field == value))
        return result.scalar_one_or_none()

    def _apply_filters(self, query, filters: dict):
        """Add an equality condition per field name and value."""
        for field_name, value in filters.items():
            query = query.where(getattr(self.model, field_name) == value)
        return query

    async def count(self, **filters) -> int:
        """
        Count records whose fields equal the given values.

        Args:
            **filters: Field name and value pairs

        Returns:
            Number of matching records
        """
        query = select(func.count()).select_from(self.model)
        query = self._apply_filters(query, filters)

        result = await self.session.execute(query)
        return result.scalar() or 0
