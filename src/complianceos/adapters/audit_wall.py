"""Activity trail: separate PostgreSQL connection for the append-only log.

This module is the ONLY place that connects to COMPLIANCEOS_ACTIVITY_DB_URL.
All other modules use the primary DB session from complianceos.common.database.

The activity database role should hold INSERT and SELECT grants only on
cos_activity_entries, so entries cannot be changed at the database level
either.

Key exports:
- init_activity_db(...) - call at startup to initialize the engine
- close_activity_db() - call at shutdown to dispose the engine
- get_activity_db_session() - FastAPI dependency for activity DB sessions
- ActivityTrailRepository - append-only write + read operations
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from complianceos.common.auth import TenantContext
from complianceos.common.errors import NotFoundError
from complianceos.common.observability import get_logger
from complianceos.core.models import ActivityEntry

logger = get_logger(__name__)

SOURCE_SERVICE = "complianceos"

_activity_engine: AsyncEngine | None = None
_activity_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_activity_db(
    activity_db_url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> None:
    """Initialize the activity trail engine and session factory.

    Args:
        activity_db_url: Connection URL for the activity database.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.
    """
    global _activity_engine, _activity_session_factory  # noqa: PLW0603

    _activity_engine = create_async_engine(
        activity_db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        # Never echo: entries carry user data.
        echo=False,
        pool_pre_ping=True,
    )
    _activity_session_factory = async_sessionmaker(
        bind=_activity_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("Activity trail engine initialized", pool_size=pool_size, max_overflow=max_overflow)


async def close_activity_db() -> None:
    """Dispose the activity trail engine."""
    global _activity_engine  # noqa: PLW0603

    if _activity_engine is not None:
        logger.info("Disposing activity trail engine")
        await _activity_engine.dispose()
        _activity_engine = None


async def get_activity_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an activity trail session.

    Yields:
        AsyncSession connected to the activity database.

    Raises:
        RuntimeError: If init_activity_db() has not been called yet.
    """
    if _activity_session_factory is None:
        raise RuntimeError(
            "Activity trail database has not been initialized. "
            "Call init_activity_db() in the application lifespan handler."
        )

    async with _activity_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class ActivityTrailRepository:
    """Append-only repository for ActivityEntry on the activity database.

    There is no update() or delete(): a wrong entry is corrected by writing a
    compensating entry.

    Args:
        session: A session from get_activity_db_session().
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        tenant_id: uuid.UUID,
        event_type: str,
        actor_id: uuid.UUID,
        resource_type: str,
        resource_id: uuid.UUID,
        action: str,
        details: dict[str, Any],
        timestamp: datetime,
        correlation_id: str | None = None,
    ) -> ActivityEntry:
        """Append one immutable entry.

        Args:
            tenant_id: Owning organization.
            event_type: Dot-notation event type.
            actor_id: Acting user (nil UUID for the system).
            resource_type: Affected resource kind.
            resource_id: Affected resource UUID.
            action: Short action verb.
            details: Event-specific payload.
            timestamp: Event time (UTC).
            correlation_id: Optional request correlation ID.

        Returns:
            The persisted ActivityEntry.
        """
        entry = ActivityEntry(
            tenant_id=tenant_id,
            event_type=event_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            details=details,
            timestamp=timestamp,
            source_service=SOURCE_SERVICE,
            correlation_id=correlation_id,
        )
        self._session.add(entry)
        await self._session.flush()
        await self._session.refresh(entry)

        logger.debug(
            "Activity entry written",
            entry_id=str(entry.id),
            event_type=event_type,
            tenant_id=str(tenant_id),
            resource_type=resource_type,
            resource_id=str(resource_id),
        )
        return entry

    async def query(
        self,
        tenant: TenantContext,
        event_type_filter: str | None = None,
        resource_type_filter: str | None = None,
        resource_id_filter: uuid.UUID | None = None,
        actor_id_filter: uuid.UUID | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ActivityEntry], int]:
        """Query the trail for the caller's tenant.

        Args:
            tenant: The tenant context.
            event_type_filter: Event type prefix (startswith match).
            resource_type_filter: Exact resource type.
            resource_id_filter: Specific resource UUID.
            actor_id_filter: Specific actor UUID.
            start_time: Inclusive lower bound on timestamp.
            end_time: Inclusive upper bound on timestamp.
            page: 1-indexed page number.
            page_size: Entries per page.

        Returns:
            Tuple of (entries newest first, total matching count).
        """
        where = [ActivityEntry.tenant_id == tenant.tenant_id]
        if event_type_filter:
            where.append(ActivityEntry.event_type.startswith(event_type_filter))
        if resource_type_filter:
            where.append(ActivityEntry.resource_type == resource_type_filter)
        if resource_id_filter:
            where.append(ActivityEntry.resource_id == resource_id_filter)
        if actor_id_filter:
            where.append(ActivityEntry.actor_id == actor_id_filter)
        if start_time:
            where.append(ActivityEntry.timestamp >= start_time)
        if end_time:
            where.append(ActivityEntry.timestamp <= end_time)

        total = (
            await self._session.execute(select(func.count()).select_from(ActivityEntry).where(*where))
        ).scalar_one()

        stmt = (
            select(ActivityEntry)
            .where(*where)
            .order_by(ActivityEntry.timestamp.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def get_by_id(self, entry_id: uuid.UUID, tenant: TenantContext) -> ActivityEntry:
        """Retrieve a single entry.

        Raises:
            NotFoundError: If the entry does not exist for this tenant.
        """
        stmt = select(ActivityEntry).where(
            ActivityEntry.id == entry_id,
            ActivityEntry.tenant_id == tenant.tenant_id,
        )
        result = await self._session.execute(stmt)
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError(resource="ActivityEntry", resource_id=str(entry_id))
        return entry
