"""Primary database plumbing: declarative base, engine lifecycle, sessions.

Key exports:
- Base / PlatformModel - declarative base and the tenant-scoped model mixin
- init_database(...) - create the engine at startup
- close_database() - dispose the engine at shutdown
- get_db_session() - FastAPI dependency, commit on success / rollback on error
- BaseRepository[T] - tenant-scoped CRUD shared by every repository
"""

import math
import uuid
from collections.abc import AsyncGenerator, Sequence
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import DateTime, func, select
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql.elements import ColumnElement

from complianceos.common.config import DatabaseSettings
from complianceos.common.errors import NotFoundError
from complianceos.common.observability import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base for all complianceOS ORM models."""


class PlatformModel(Base):
    """Abstract tenant-scoped model with UUID primary key and timestamps.

    Attributes:
        id: Primary key UUID.
        tenant_id: Owning organization UUID. Every query filters on it.
        created_at: Row creation time (UTC).
        updated_at: Last modification time (UTC).
    """

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now()
    )


def init_database(settings: DatabaseSettings) -> None:
    """Create the primary async engine and session factory.

    Args:
        settings: Primary database settings.
    """
    global _engine, _session_factory  # noqa: PLW0603

    _engine = create_async_engine(
        settings.url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        echo=settings.echo,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(bind=_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Primary database engine initialized", pool_size=settings.pool_size)


async def close_database() -> None:
    """Dispose the primary engine. Safe to call when never initialized."""
    global _engine  # noqa: PLW0603

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Primary database engine disposed")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a primary DB session.

    The session commits when the request handler returns and rolls back
    when it raises.

    Yields:
        AsyncSession bound to the primary database.

    Raises:
        RuntimeError: If init_database() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Primary database has not been initialized. Call init_database() in the lifespan handler.")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


ModelT = TypeVar("ModelT", bound=PlatformModel)


def page_count(total: int, page_size: int) -> int:
    """Number of pages needed for `total` rows at `page_size` per page."""
    return math.ceil(total / page_size) if page_size > 0 else 0


def to_page(items: Sequence[Any], total: int, page: int, page_size: int) -> dict[str, Any]:
    """Build the standard paginated payload `{items, page, limit, total, pages}`."""
    return {
        "items": list(items),
        "page": page,
        "limit": page_size,
        "total": total,
        "pages": page_count(total, page_size),
    }


class BaseRepository(Generic[ModelT]):
    """Tenant-scoped CRUD helpers shared by every repository.

    Args:
        session: Primary DB async session.
        model: The ORM model class this repository manages.
    """

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def get_by_id(self, entity_id: uuid.UUID, tenant_id: uuid.UUID) -> ModelT:
        """Fetch one row by id within the tenant.

        Args:
            entity_id: Primary key.
            tenant_id: Owning tenant.

        Returns:
            The model instance.

        Raises:
            NotFoundError: If no row matches.
        """
        stmt = select(self._model).where(self._model.id == entity_id, self._model.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        entity = result.scalar_one_or_none()
        if entity is None:
            raise NotFoundError(resource=self._model.__name__, resource_id=str(entity_id))
        return entity

    async def find_by_id(self, entity_id: uuid.UUID, tenant_id: uuid.UUID) -> ModelT | None:
        """Like get_by_id() but returns None instead of raising."""
        stmt = select(self._model).where(self._model.id == entity_id, self._model.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, entity: ModelT) -> ModelT:
        """Persist a new instance and reload server-side defaults."""
        self._session.add(entity)
        await self._session.flush()
        await self._session.refresh(entity)
        return entity

    async def save(self, entity: ModelT) -> ModelT:
        """Flush pending changes on an already-loaded instance."""
        await self._session.flush()
        await self._session.refresh(entity)
        return entity

    async def delete(self, entity: ModelT) -> None:
        """Delete an instance."""
        await self._session.delete(entity)
        await self._session.flush()

    async def list_page(
        self,
        tenant_id: uuid.UUID,
        filters: Sequence[ColumnElement[bool]] = (),
        page: int = 1,
        page_size: int = 20,
        order_by: Sequence[Any] | None = None,
    ) -> tuple[list[ModelT], int]:
        """Return one page of tenant rows and the total matching count.

        Args:
            tenant_id: Owning tenant.
            filters: Extra WHERE clauses.
            page: 1-indexed page number.
            page_size: Rows per page.
            order_by: Ordering clauses; defaults to newest first.

        Returns:
            Tuple of (rows, total).
        """
        where = [self._model.tenant_id == tenant_id, *filters]
        count_stmt = select(func.count()).select_from(self._model).where(*where)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = select(self._model).where(*where)
        stmt = stmt.order_by(*(order_by if order_by is not None else [self._model.created_at.desc()]))
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_where(
        self,
        tenant_id: uuid.UUID,
        filters: Sequence[ColumnElement[bool]] = (),
        order_by: Sequence[Any] | None = None,
        limit: int | None = None,
    ) -> list[ModelT]:
        """Return all tenant rows matching the filters (optionally capped)."""
        stmt = select(self._model).where(self._model.tenant_id == tenant_id, *filters)
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def existing_ids(self, tenant_id: uuid.UUID, ids: Sequence[uuid.UUID]) -> set[uuid.UUID]:
        """The subset of `ids` that exist in the tenant."""
        if not ids:
            return set()
        stmt = select(self._model.id).where(self._model.tenant_id == tenant_id, self._model.id.in_(list(ids)))
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def count(self, tenant_id: uuid.UUID, filters: Sequence[ColumnElement[bool]] = ()) -> int:
        """Count tenant rows matching the filters."""
        stmt = select(func.count()).select_from(self._model).where(self._model.tenant_id == tenant_id, *filters)
        return (await self._session.execute(stmt)).scalar_one()

    async def count_by(
        self,
        tenant_id: uuid.UUID,
        column: Any,
        filters: Sequence[ColumnElement[bool]] = (),
    ) -> dict[str, int]:
        """GROUP BY `column` and return {value: count} for the tenant."""
        stmt = (
            select(column, func.count())
            .select_from(self._model)
            .where(self._model.tenant_id == tenant_id, *filters)
            .group_by(column)
        )
        result = await self._session.execute(stmt)
        return {str(value): int(count) for value, count in result.all()}
