"""
Base Repository for the Exam Prep backend

Generic async repository over a request- or job-scoped session.
Repositories never commit: the session owner (FastAPI dependency or
script context manager) decides the transaction boundary.
"""

from abc import ABC, abstractmethod
from typing import TypeVar, Generic, List, Optional, Type
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction
from sqlmodel import SQLModel


# Type variable for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)


class IReadRepository(ABC, Generic[ModelType]):
    """Interface for read operations."""

    @abstractmethod
    async def get_by_id(self, id: UUID) -> Optional[ModelType]:
        """Get a single record by ID."""
        pass

    @abstractmethod
    async def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        """Get all records with pagination."""
        pass


class IWriteRepository(ABC, Generic[ModelType]):
    """Interface for write operations."""

    @abstractmethod
    async def add(self, obj: ModelType) -> ModelType:
        """Persist a new record."""
        pass

    @abstractmethod
    async def save(self, obj: ModelType) -> ModelType:
        """Flush changes made to a loaded record."""
        pass


class BaseRepository(IReadRepository[ModelType], IWriteRepository[ModelType]):
    """
    Generic async repository with the operations every table needs.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    async def get_by_id(self, id: UUID) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Args:
            id: UUID primary key

        Returns:
            Model instance or None if not found
        """
        return await self._session.get(self._model, id)

    async def get_for_update(self, id: UUID) -> Optional[ModelType]:
        """
        Get a record and hold a row lock until the transaction ends.

        Concurrent callers for the same row wait here, so at most one of
        them acts on a given state.
        """
        stmt = (
            select(self._model)
            .where(self._model.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        stmt = select(self._model).offset(skip).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, obj: ModelType) -> ModelType:
        """
        Persist a new record.

        Flushes so database defaults and constraint violations surface
        immediately, inside the caller's savepoint if there is one.
        """
        self._session.add(obj)
        await self._session.flush()
        await self._session.refresh(obj)
        return obj

    async def save(self, obj: ModelType) -> ModelType:
        self._session.add(obj)
        await self._session.flush()
        return obj

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._model)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    def savepoint(self) -> AsyncSessionTransaction:
        """
        Nested transaction for work that must fail on its own.

        Usage:
            async with repo.savepoint():
                ...  # rolled back alone if this block raises
        """
        return self._session.begin_nested()
