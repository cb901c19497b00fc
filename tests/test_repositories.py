"""Tests for the adapter/repository layer.

Tests ActivityTrailRepository (append-only trail) and primary DB repositories.
These are unit tests using mock SQLAlchemy sessions; statements are compiled
against the PostgreSQL dialect instead of executed.

Tests verify:
- Tenant scoping of generated queries
- Immutability of ActivityTrailRepository (no update/delete)
- append() correctly builds ActivityEntry objects
- The conditional UPDATE behind audit run locking
"""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

import complianceos.adapters.audit_wall as audit_wall_module
from complianceos.adapters.audit_wall import ActivityTrailRepository, get_activity_db_session
from complianceos.adapters.repositories import (
    AuditRunRepository,
    ControlRepository,
    EncryptionKeyRepository,
    EvidenceRepository,
    FrameworkRepository,
)
from complianceos.common.auth import TenantContext
from complianceos.common.errors import NotFoundError
from complianceos.core.models import ActivityEntry


def _sql(statement: object) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))  # type: ignore[attr-defined]


def _session_returning(value: object) -> AsyncMock:
    """A session whose execute() result yields `value` from every accessor."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    result.scalar.return_value = value
    session = AsyncMock()
    session.execute.return_value = result
    session.add = MagicMock()
    return session


class TestActivityTrailRepository:
    """Tests for ActivityTrailRepository immutability and append()."""

    def test_repository_has_no_update_or_delete(self) -> None:
        repo = ActivityTrailRepository(AsyncMock())

        for name in ("update", "update_status", "delete", "remove", "truncate"):
            assert not hasattr(repo, name), f"ActivityTrailRepository must not have {name}()"

    @pytest.mark.asyncio()
    async def test_append_creates_entry(self, tenant_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        session = AsyncMock()
        added_objects: list[ActivityEntry] = []
        session.add = MagicMock(side_effect=added_objects.append)

        async def mock_refresh(obj: ActivityEntry) -> None:
            obj.id = uuid.uuid4()

        session.refresh = AsyncMock(side_effect=mock_refresh)

        repo = ActivityTrailRepository(session)
        resource_id = uuid.uuid4()
        timestamp = datetime.now(UTC)

        entry = await repo.append(
            tenant_id=tenant_id,
            event_type="compliance.audit_run.locked",
            actor_id=actor_id,
            resource_type="audit_run",
            resource_id=resource_id,
            action="lock",
            details={"status": "LOCKED"},
            timestamp=timestamp,
            correlation_id="req-123",
        )

        [added] = added_objects
        assert added is entry
        assert added.tenant_id == tenant_id
        assert added.event_type == "compliance.audit_run.locked"
        assert added.actor_id == actor_id
        assert added.resource_id == resource_id
        assert added.details == {"status": "LOCKED"}
        assert added.timestamp == timestamp
        assert added.source_service == "complianceos"
        assert added.correlation_id == "req-123"
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_get_by_id_is_tenant_scoped(self, mock_tenant: TenantContext) -> None:
        session = _session_returning(None)
        repo = ActivityTrailRepository(session)

        with pytest.raises(NotFoundError):
            await repo.get_by_id(uuid.uuid4(), mock_tenant)

        sql = _sql(session.execute.call_args.args[0])
        assert "cos_activity_entries.tenant_id" in sql

    @pytest.mark.asyncio()
    async def test_session_requires_initialization(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(audit_wall_module, "_activity_session_factory", None)

        gen = get_activity_db_session()
        with pytest.raises(RuntimeError, match="Activity trail database has not been initialized"):
            await gen.__anext__()


class TestBaseRepository:
    @pytest.mark.asyncio()
    async def test_get_by_id_raises_not_found(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        repo = FrameworkRepository(session)
        framework_id = uuid.uuid4()

        with pytest.raises(NotFoundError) as exc_info:
            await repo.get_by_id(framework_id, tenant_id)

        assert exc_info.value.resource == "Framework"
        assert exc_info.value.resource_id == str(framework_id)
        sql = _sql(session.execute.call_args.args[0])
        assert "cos_frameworks.tenant_id" in sql
        assert "cos_frameworks.id" in sql

    @pytest.mark.asyncio()
    async def test_existing_ids_short_circuits(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        assert await FrameworkRepository(session).existing_ids(tenant_id, []) == set()
        session.execute.assert_not_called()

    @pytest.mark.asyncio()
    async def test_add_flushes_and_refreshes(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        entity = MagicMock()

        assert await FrameworkRepository(session).add(entity) is entity
        session.add.assert_called_once_with(entity)
        session.flush.assert_awaited_once()
        session.refresh.assert_awaited_once_with(entity)


class TestAuditRunRepository:
    @pytest.mark.asyncio()
    @pytest.mark.parametrize(("rowcount", "locked"), [(1, True), (0, False)])
    async def test_lock_if_completed(
        self, tenant_id: uuid.UUID, actor_id: uuid.UUID, rowcount: int, locked: bool
    ) -> None:
        session = AsyncMock()
        session.execute.return_value = MagicMock(rowcount=rowcount)
        repo = AuditRunRepository(session)

        assert await repo.lock_if_completed(uuid.uuid4(), tenant_id, actor_id, datetime.now(UTC)) is locked

        sql = _sql(session.execute.call_args.args[0])
        assert sql.startswith("UPDATE cos_audit_runs")
        assert "cos_audit_runs.status = " in sql
        assert "cos_audit_runs.tenant_id = " in sql


class TestEncryptionKeyRepository:
    @pytest.mark.asyncio()
    async def test_max_version_defaults_to_zero(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        assert await EncryptionKeyRepository(session).max_version(tenant_id) == 0

    @pytest.mark.asyncio()
    async def test_max_version(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(4)
        assert await EncryptionKeyRepository(session).max_version(tenant_id) == 4


class TestControlRepository:
    @pytest.mark.asyncio()
    async def test_due_for_review_predicate(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        now = datetime.now(UTC)

        await ControlRepository(session).list_due_for_review(tenant_id, now, now - timedelta(days=365))

        sql = _sql(session.execute.call_args.args[0])
        assert "cos_controls.tenant_id = " in sql
        assert "cos_controls.next_review_date <= " in sql
        assert "cos_controls.next_review_date IS NULL AND cos_controls.updated_at < " in sql
        assert " OR " in sql


class TestEvidenceRepository:
    @pytest.mark.asyncio()
    async def test_approved_for_controls_newest_first(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        session.execute.return_value.all.return_value = []

        assert await EvidenceRepository(session).approved_for_controls(tenant_id, [uuid.uuid4()]) == []

        sql = _sql(session.execute.call_args.args[0])
        assert "cos_evidence.status = " in sql
        assert "ORDER BY cos_evidence.updated_at DESC" in sql

    @pytest.mark.asyncio()
    async def test_approved_for_controls_without_controls(self, tenant_id: uuid.UUID) -> None:
        session = _session_returning(None)
        assert await EvidenceRepository(session).approved_for_controls(tenant_id, []) == []
        session.execute.assert_not_called()
