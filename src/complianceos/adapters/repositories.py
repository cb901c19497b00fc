"""SQLAlchemy repositories for the complianceOS primary database.

Each repository extends BaseRepository, which provides the tenant-scoped
get/list/count/add/save/delete helpers. The classes below only add the
queries a service needs beyond those. Models with no extra queries are used
through BaseRepository directly, e.g. `BaseRepository(session, RiskTreatment)`.

NOTE: ActivityTrailRepository lives in audit_wall.py. It uses a separate
database session and must never share a session with these repositories.
"""

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Text, cast, exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.common.database import BaseRepository
from complianceos.common.observability import get_logger
from complianceos.core.models import (
    OPEN_TASK_STATUSES,
    AIEmbedding,
    AIQuery,
    AlertStatus,
    Answer,
    AnswerLibraryEntry,
    AuditControl,
    AuditEvidenceLink,
    AuditRun,
    AuditRunStatus,
    Control,
    DirectoryUser,
    EncryptionKey,
    Evidence,
    EvidenceControlLink,
    EvidenceStatus,
    EvidenceVersion,
    Framework,
    GovernanceAlert,
    GovernanceDashboard,
    KeyStatus,
    KnowledgeArticle,
    KnowledgeArticleVersion,
    KnowledgeBookmark,
    KnowledgeCategory,
    KnowledgeTerm,
    OrganizationMember,
    Policy,
    PolicyAcknowledgment,
    PolicyVersion,
    Question,
    Risk,
    Task,
    TaskStatus,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Frameworks & controls
# ---------------------------------------------------------------------------


class FrameworkRepository(BaseRepository[Framework]):
    """Repository for Framework."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Framework)


class ControlRepository(BaseRepository[Control]):
    """Repository for Control."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Control)

    async def find_by_code(self, tenant_id: uuid.UUID, framework_id: uuid.UUID, code: str) -> Control | None:
        """Return the control with `code` in the framework, if any."""
        stmt = select(Control).where(
            Control.tenant_id == tenant_id,
            Control.framework_id == framework_id,
            Control.code == code,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_ids(self, tenant_id: uuid.UUID, control_ids: Sequence[uuid.UUID]) -> list[Control]:
        """Return the tenant's controls among `control_ids` (unknown ids are dropped)."""
        if not control_ids:
            return []
        return await self.list_where(tenant_id, [Control.id.in_(list(control_ids))])

    async def list_due_for_review(self, tenant_id: uuid.UUID, now: datetime, stale_before: datetime) -> list[Control]:
        """Controls whose review date has passed, or that have none and are stale.

        Args:
            tenant_id: Owning tenant.
            now: Current time.
            stale_before: Controls without a review date last updated before this are due.
        """
        return await self.list_where(
            tenant_id,
            [
                or_(
                    Control.next_review_date <= now,
                    (Control.next_review_date.is_(None)) & (Control.updated_at < stale_before),
                )
            ],
        )


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceRepository(BaseRepository[Evidence]):
    """Repository for Evidence, its versions and its control links."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Evidence)

    async def add_version(self, version: EvidenceVersion) -> EvidenceVersion:
        """Persist a new EvidenceVersion row."""
        self._session.add(version)
        await self._session.flush()
        return version

    async def list_versions(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID) -> list[EvidenceVersion]:
        """All versions of an evidence item, newest first."""
        stmt = (
            select(EvidenceVersion)
            .where(EvidenceVersion.tenant_id == tenant_id, EvidenceVersion.evidence_id == evidence_id)
            .order_by(EvidenceVersion.version.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def link_exists(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID, control_id: uuid.UUID) -> bool:
        """Whether the evidence is already linked to the control."""
        stmt = select(
            exists().where(
                EvidenceControlLink.tenant_id == tenant_id,
                EvidenceControlLink.evidence_id == evidence_id,
                EvidenceControlLink.control_id == control_id,
            )
        )
        return bool((await self._session.execute(stmt)).scalar())

    async def add_link(self, link: EvidenceControlLink) -> EvidenceControlLink:
        """Persist an evidence/control link."""
        self._session.add(link)
        await self._session.flush()
        return link

    async def linked_control_ids(self, tenant_id: uuid.UUID, evidence_id: uuid.UUID) -> list[uuid.UUID]:
        """Control ids linked to an evidence item."""
        stmt = select(EvidenceControlLink.control_id).where(
            EvidenceControlLink.tenant_id == tenant_id,
            EvidenceControlLink.evidence_id == evidence_id,
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_expiring(
        self,
        tenant_id: uuid.UUID,
        now: datetime,
        until: datetime,
        statuses: Sequence[str] = (EvidenceStatus.APPROVED, EvidenceStatus.SUBMITTED),
    ) -> list[Evidence]:
        """Evidence in `statuses` expiring between now and `until`, soonest first."""
        return await self.list_where(
            tenant_id,
            [Evidence.status.in_(list(statuses)), Evidence.expiry_date >= now, Evidence.expiry_date <= until],
            order_by=[Evidence.expiry_date.asc()],
        )

    async def approved_for_controls(
        self,
        tenant_id: uuid.UUID,
        control_ids: Sequence[uuid.UUID],
    ) -> list[tuple[Evidence, int]]:
        """APPROVED evidence linked to any of `control_ids`.

        Returns:
            (evidence, number of the given controls it is linked to) pairs.
        """
        if not control_ids:
            return []
        stmt = (
            select(Evidence, func.count(EvidenceControlLink.control_id))
            .join(EvidenceControlLink, EvidenceControlLink.evidence_id == Evidence.id)
            .where(
                Evidence.tenant_id == tenant_id,
                Evidence.status == EvidenceStatus.APPROVED,
                EvidenceControlLink.control_id.in_(list(control_ids)),
            )
            .group_by(Evidence.id)
            .order_by(Evidence.updated_at.desc())
        )
        result = await self._session.execute(stmt)
        return [(row[0], int(row[1])) for row in result.all()]

    async def search_approved(self, tenant_id: uuid.UUID, terms: Sequence[str], limit: int = 3) -> list[Evidence]:
        """APPROVED evidence whose title or description mentions any of `terms`."""
        clauses = [Evidence.title.ilike(f"%{term}%") for term in terms]
        clauses += [Evidence.description.ilike(f"%{term}%") for term in terms]
        return await self.list_where(
            tenant_id,
            [Evidence.status == EvidenceStatus.APPROVED, or_(*clauses)],
            order_by=[Evidence.updated_at.desc()],
            limit=limit,
        )


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class PolicyRepository(BaseRepository[Policy]):
    """Repository for Policy and PolicyVersion."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Policy)

    async def add_version(self, version: PolicyVersion) -> PolicyVersion:
        self._session.add(version)
        await self._session.flush()
        return version

    async def get_version(self, tenant_id: uuid.UUID, policy_id: uuid.UUID, version: str) -> PolicyVersion | None:
        stmt = select(PolicyVersion).where(
            PolicyVersion.tenant_id == tenant_id,
            PolicyVersion.policy_id == policy_id,
            PolicyVersion.version == version,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_versions(self, tenant_id: uuid.UUID, policy_id: uuid.UUID) -> list[PolicyVersion]:
        stmt = (
            select(PolicyVersion)
            .where(PolicyVersion.tenant_id == tenant_id, PolicyVersion.policy_id == policy_id)
            .order_by(PolicyVersion.created_at.desc())
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def search(self, tenant_id: uuid.UUID, query: str, limit: int = 50) -> list[Policy]:
        """Case-insensitive substring match on title or description."""
        pattern = f"%{query}%"
        return await self.list_where(
            tenant_id,
            [or_(Policy.title.ilike(pattern), Policy.description.ilike(pattern))],
            order_by=[Policy.updated_at.desc()],
            limit=limit,
        )


class AcknowledgmentRepository(BaseRepository[PolicyAcknowledgment]):
    """Repository for PolicyAcknowledgment."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, PolicyAcknowledgment)

    async def users_with_status(
        self,
        tenant_id: uuid.UUID,
        policy_id: uuid.UUID,
        statuses: Sequence[str],
    ) -> set[uuid.UUID]:
        """User ids holding an acknowledgment for the policy in one of `statuses`."""
        stmt = select(PolicyAcknowledgment.user_id).where(
            PolicyAcknowledgment.tenant_id == tenant_id,
            PolicyAcknowledgment.policy_id == policy_id,
            PolicyAcknowledgment.status.in_(list(statuses)),
        )
        return set((await self._session.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# Risks
# ---------------------------------------------------------------------------


class RiskRepository(BaseRepository[Risk]):
    """Repository for Risk."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Risk)

    async def search(self, tenant_id: uuid.UUID, query: str, limit: int = 50) -> list[Risk]:
        pattern = f"%{query}%"
        return await self.list_where(
            tenant_id,
            [or_(Risk.title.ilike(pattern), Risk.description.ilike(pattern))],
            order_by=[Risk.risk_score.desc()],
            limit=limit,
        )

    async def average_score(self, tenant_id: uuid.UUID) -> float:
        stmt = select(func.avg(Risk.risk_score)).where(Risk.tenant_id == tenant_id)
        value = (await self._session.execute(stmt)).scalar()
        return float(value or 0.0)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskRepository(BaseRepository[Task]):
    """Repository for Task."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Task)

    async def open_task_exists(
        self,
        tenant_id: uuid.UUID,
        task_type: str,
        control_id: uuid.UUID | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> bool:
        """Whether an OPEN/IN_PROGRESS task of `task_type` exists for the control/evidence pair."""
        clauses: list[Any] = [
            Task.tenant_id == tenant_id,
            Task.task_type == task_type,
            Task.status.in_(list(OPEN_TASK_STATUSES)),
        ]
        clauses.append(Task.control_id == control_id if control_id else Task.control_id.is_(None))
        clauses.append(Task.evidence_id == evidence_id if evidence_id else Task.evidence_id.is_(None))
        stmt = select(exists().where(*clauses))
        return bool((await self._session.execute(stmt)).scalar())

    async def complete_open_tasks(
        self,
        tenant_id: uuid.UUID,
        control_id: uuid.UUID,
        task_types: Sequence[str],
        completed_at: datetime,
        audit_run_id: uuid.UUID | None = None,
    ) -> int:
        """Mark the control's OPEN/IN_PROGRESS tasks of `task_types` as COMPLETED.

        Args:
            tenant_id: Owning tenant.
            control_id: Control whose tasks are completed.
            task_types: Task types to complete.
            completed_at: Completion timestamp.
            audit_run_id: Restrict to tasks of one audit run.

        Returns:
            Number of tasks completed.
        """
        stmt = (
            update(Task)
            .where(
                Task.tenant_id == tenant_id,
                Task.control_id == control_id,
                Task.task_type.in_(list(task_types)),
                Task.status.in_(list(OPEN_TASK_STATUSES)),
            )
            .values(status=TaskStatus.COMPLETED, completed_at=completed_at, updated_at=completed_at)
        )
        if audit_run_id is not None:
            stmt = stmt.where(Task.audit_run_id == audit_run_id)
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Audit runs
# ---------------------------------------------------------------------------


class AuditRunRepository(BaseRepository[AuditRun]):
    """Repository for AuditRun."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AuditRun)

    async def lock_if_completed(
        self,
        run_id: uuid.UUID,
        tenant_id: uuid.UUID,
        locked_by: uuid.UUID,
        locked_at: datetime,
    ) -> bool:
        """Atomically move a COMPLETED run to LOCKED.

        The UPDATE only matches while the row is still COMPLETED, so two
        concurrent lock requests cannot both succeed.

        Returns:
            True if this call locked the run, False if the row was no longer COMPLETED.
        """
        stmt = (
            update(AuditRun)
            .where(
                AuditRun.id == run_id,
                AuditRun.tenant_id == tenant_id,
                AuditRun.status == AuditRunStatus.COMPLETED,
            )
            .values(status=AuditRunStatus.LOCKED, locked_at=locked_at, locked_by=locked_by, updated_at=locked_at)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1


class AuditControlRepository(BaseRepository[AuditControl]):
    """Repository for AuditControl and its evidence links."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AuditControl)

    async def list_for_run(self, tenant_id: uuid.UUID, run_id: uuid.UUID) -> list[AuditControl]:
        return await self.list_where(
            tenant_id, [AuditControl.audit_run_id == run_id], order_by=[AuditControl.created_at.asc()]
        )

    async def replace_evidence_links(
        self,
        tenant_id: uuid.UUID,
        audit_control: AuditControl,
        evidence_ids: Sequence[uuid.UUID],
        linked_by: uuid.UUID,
    ) -> None:
        """Replace the evidence presented for an audit control."""
        existing = await self.list_evidence_links(tenant_id, audit_control.audit_run_id, audit_control.id)
        for link in existing:
            await self._session.delete(link)
        for evidence_id in evidence_ids:
            self._session.add(
                AuditEvidenceLink(
                    tenant_id=tenant_id,
                    audit_run_id=audit_control.audit_run_id,
                    audit_control_id=audit_control.id,
                    evidence_id=evidence_id,
                    linked_by=linked_by,
                )
            )
        await self._session.flush()

    async def list_evidence_links(
        self,
        tenant_id: uuid.UUID,
        run_id: uuid.UUID,
        audit_control_id: uuid.UUID | None = None,
    ) -> list[AuditEvidenceLink]:
        stmt = select(AuditEvidenceLink).where(
            AuditEvidenceLink.tenant_id == tenant_id,
            AuditEvidenceLink.audit_run_id == run_id,
        )
        if audit_control_id is not None:
            stmt = stmt.where(AuditEvidenceLink.audit_control_id == audit_control_id)
        return list((await self._session.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# Questionnaires
# ---------------------------------------------------------------------------


class QuestionRepository(BaseRepository[Question]):
    """Repository for Question and its Answer."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Question)

    async def list_for_questionnaire(self, tenant_id: uuid.UUID, questionnaire_id: uuid.UUID) -> list[Question]:
        return await self.list_where(
            tenant_id,
            [Question.questionnaire_id == questionnaire_id],
            order_by=[Question.order_index.asc()],
        )

    async def get_answer(self, tenant_id: uuid.UUID, question_id: uuid.UUID) -> Answer | None:
        stmt = select(Answer).where(Answer.tenant_id == tenant_id, Answer.question_id == question_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_answers(self, tenant_id: uuid.UUID, questionnaire_id: uuid.UUID) -> list[Answer]:
        stmt = select(Answer).where(Answer.tenant_id == tenant_id, Answer.questionnaire_id == questionnaire_id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def add_answer(self, answer: Answer) -> Answer:
        self._session.add(answer)
        await self._session.flush()
        await self._session.refresh(answer)
        return answer


class AnswerLibraryRepository(BaseRepository[AnswerLibraryEntry]):
    """Repository for AnswerLibraryEntry."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AnswerLibraryEntry)

    async def list_active(self, tenant_id: uuid.UUID) -> list[AnswerLibraryEntry]:
        return await self.list_where(
            tenant_id,
            [AnswerLibraryEntry.is_active.is_(True)],
            order_by=[AnswerLibraryEntry.confidence_score.desc()],
        )

    async def search(self, tenant_id: uuid.UUID, query: str, limit: int = 20) -> list[AnswerLibraryEntry]:
        """Active entries whose answer or any key phrase contains `query`."""
        pattern = f"%{query.lower()}%"
        phrase_match = func.lower(cast(AnswerLibraryEntry.key_phrases, Text))
        return await self.list_where(
            tenant_id,
            [
                AnswerLibraryEntry.is_active.is_(True),
                or_(AnswerLibraryEntry.standard_answer.ilike(pattern), phrase_match.like(pattern)),
            ],
            order_by=[AnswerLibraryEntry.confidence_score.desc()],
            limit=limit,
        )


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------


class KnowledgeArticleRepository(BaseRepository[KnowledgeArticle]):
    """Repository for KnowledgeArticle and its version history."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, KnowledgeArticle)

    async def find_by_slug(
        self, tenant_id: uuid.UUID, slug: str, exclude_id: uuid.UUID | None = None
    ) -> KnowledgeArticle | None:
        stmt = select(KnowledgeArticle).where(KnowledgeArticle.tenant_id == tenant_id, KnowledgeArticle.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(KnowledgeArticle.id != exclude_id)
        return (await self._session.execute(stmt.limit(1))).scalar_one_or_none()

    async def increment_view_count(self, article_id: uuid.UUID, tenant_id: uuid.UUID) -> int | None:
        """Add one view in a single UPDATE and return the new count, or None if no row matched."""
        stmt = (
            update(KnowledgeArticle)
            .where(KnowledgeArticle.id == article_id, KnowledgeArticle.tenant_id == tenant_id)
            .values(view_count=KnowledgeArticle.view_count + 1)
            .returning(KnowledgeArticle.view_count)
            .execution_options(synchronize_session="fetch")
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def totals(self, tenant_id: uuid.UUID) -> tuple[int, float]:
        """(sum of view counts, mean rating over rated articles)."""
        stmt = select(func.sum(KnowledgeArticle.view_count), func.avg(KnowledgeArticle.rating)).where(
            KnowledgeArticle.tenant_id == tenant_id
        )
        row = (await self._session.execute(stmt)).one()
        return int(row[0] or 0), float(row[1] or 0.0)

    async def add_version(self, version: KnowledgeArticleVersion) -> KnowledgeArticleVersion:
        self._session.add(version)
        await self._session.flush()
        return version

    async def list_versions(self, tenant_id: uuid.UUID, article_id: uuid.UUID) -> list[KnowledgeArticleVersion]:
        stmt = (
            select(KnowledgeArticleVersion)
            .where(KnowledgeArticleVersion.tenant_id == tenant_id, KnowledgeArticleVersion.article_id == article_id)
            .order_by(KnowledgeArticleVersion.version.desc())
        )
        return list((await self._session.execute(stmt)).scalars().all())


class KnowledgeCategoryRepository(BaseRepository[KnowledgeCategory]):
    """Repository for KnowledgeCategory."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, KnowledgeCategory)

    async def find_sibling(
        self,
        tenant_id: uuid.UUID,
        name: str,
        parent_id: uuid.UUID | None,
        framework_id: uuid.UUID | None,
    ) -> KnowledgeCategory | None:
        """A category with the same name (case-insensitive) under the same parent and framework."""
        stmt = select(KnowledgeCategory).where(
            KnowledgeCategory.tenant_id == tenant_id,
            func.lower(KnowledgeCategory.name) == name.lower(),
            KnowledgeCategory.parent_id.is_(None) if parent_id is None else KnowledgeCategory.parent_id == parent_id,
            (
                KnowledgeCategory.framework_id.is_(None)
                if framework_id is None
                else KnowledgeCategory.framework_id == framework_id
            ),
        )
        return (await self._session.execute(stmt.limit(1))).scalar_one_or_none()


class KnowledgeTermRepository(BaseRepository[KnowledgeTerm]):
    """Repository for KnowledgeTerm."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, KnowledgeTerm)

    async def find_term(
        self, tenant_id: uuid.UUID, term: str, framework_id: uuid.UUID | None
    ) -> KnowledgeTerm | None:
        """The same term (case-insensitive) already defined for the framework, or globally when None."""
        stmt = select(KnowledgeTerm).where(
            KnowledgeTerm.tenant_id == tenant_id,
            func.lower(KnowledgeTerm.term) == term.lower(),
            (
                KnowledgeTerm.framework_id.is_(None)
                if framework_id is None
                else KnowledgeTerm.framework_id == framework_id
            ),
        )
        return (await self._session.execute(stmt.limit(1))).scalar_one_or_none()


class KnowledgeBookmarkRepository(BaseRepository[KnowledgeBookmark]):
    """Repository for KnowledgeBookmark."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, KnowledgeBookmark)

    async def find(
        self, tenant_id: uuid.UUID, user_id: uuid.UUID, article_id: uuid.UUID
    ) -> KnowledgeBookmark | None:
        stmt = select(KnowledgeBookmark).where(
            KnowledgeBookmark.tenant_id == tenant_id,
            KnowledgeBookmark.user_id == user_id,
            KnowledgeBookmark.article_id == article_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def bookmarked_articles(self, tenant_id: uuid.UUID, user_id: uuid.UUID) -> list[KnowledgeArticle]:
        """The user's bookmarked articles, most recently bookmarked first."""
        stmt = (
            select(KnowledgeArticle)
            .join(KnowledgeBookmark, KnowledgeBookmark.article_id == KnowledgeArticle.id)
            .where(KnowledgeBookmark.tenant_id == tenant_id, KnowledgeBookmark.user_id == user_id)
            .order_by(KnowledgeBookmark.created_at.desc())
        )
        return list((await self._session.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# AI
# ---------------------------------------------------------------------------


class EmbeddingRepository(BaseRepository[AIEmbedding]):
    """Repository for AIEmbedding."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AIEmbedding)

    async def upsert(
        self,
        tenant_id: uuid.UUID,
        source_type: str,
        source_id: uuid.UUID,
        content: str,
        embedding: list[float],
        model: str,
        meta: dict[str, Any],
    ) -> None:
        """Insert the embedding or overwrite the existing one for the same source."""
        stmt = insert(AIEmbedding.__table__).values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            source_type=source_type,
            source_id=source_id,
            content=content,
            embedding=embedding,
            model=model,
            metadata=meta,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_cos_ai_embeddings_source",
            set_={
                "content": stmt.excluded["content"],
                "embedding": stmt.excluded["embedding"],
                "model": stmt.excluded["model"],
                "metadata": stmt.excluded["metadata"],
                "updated_at": func.now(),
            },
        )
        await self._session.execute(stmt)

    async def list_candidates(
        self, tenant_id: uuid.UUID, source_types: Sequence[str] | None = None
    ) -> list[AIEmbedding]:
        filters = [AIEmbedding.source_type.in_(list(source_types))] if source_types else []
        return await self.list_where(tenant_id, filters)

    async def delete_many(self, embeddings: Sequence[AIEmbedding]) -> int:
        for embedding in embeddings:
            await self._session.delete(embedding)
        await self._session.flush()
        return len(embeddings)


class AIQueryRepository(BaseRepository[AIQuery]):
    """Repository for AIQuery."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AIQuery)

    async def commit_failure(self, query: AIQuery) -> None:
        """Commit a FAILED query now; the request transaction is rolled back when the error propagates."""
        self._session.add(query)
        await self._session.commit()

    async def averages(self, tenant_id: uuid.UUID) -> tuple[float, float]:
        """(average response_time_ms, average confidence) over the tenant's queries."""
        stmt = select(func.avg(AIQuery.response_time_ms), func.avg(AIQuery.confidence)).where(
            AIQuery.tenant_id == tenant_id
        )
        row = (await self._session.execute(stmt)).one()
        return float(row[0] or 0.0), float(row[1] or 0.0)

    async def top_queries(self, tenant_id: uuid.UUID, limit: int = 10) -> list[tuple[str, int]]:
        """Most frequently asked query texts."""
        stmt = (
            select(AIQuery.query_text, func.count())
            .where(AIQuery.tenant_id == tenant_id)
            .group_by(AIQuery.query_text)
            .order_by(func.count().desc())
            .limit(limit)
        )
        return [(text, int(count)) for text, count in (await self._session.execute(stmt)).all()]


# ---------------------------------------------------------------------------
# Governance
# ---------------------------------------------------------------------------


class DashboardRepository(BaseRepository[GovernanceDashboard]):
    """Repository for GovernanceDashboard."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, GovernanceDashboard)

    async def clear_default(self, tenant_id: uuid.UUID, keep_id: uuid.UUID) -> None:
        """Unset is_default on every other dashboard of the tenant."""
        stmt = (
            update(GovernanceDashboard)
            .where(
                GovernanceDashboard.tenant_id == tenant_id,
                GovernanceDashboard.id != keep_id,
                GovernanceDashboard.is_default.is_(True),
            )
            .values(is_default=False)
        )
        await self._session.execute(stmt)


class AlertRepository(BaseRepository[GovernanceAlert]):
    """Repository for GovernanceAlert."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, GovernanceAlert)

    async def active_exists(self, tenant_id: uuid.UUID, alert_type: str, source_id: str) -> bool:
        stmt = select(
            exists().where(
                GovernanceAlert.tenant_id == tenant_id,
                GovernanceAlert.alert_type == alert_type,
                GovernanceAlert.source_id == source_id,
                GovernanceAlert.status == AlertStatus.ACTIVE,
            )
        )
        return bool((await self._session.execute(stmt)).scalar())


# ---------------------------------------------------------------------------
# Enterprise
# ---------------------------------------------------------------------------


class EncryptionKeyRepository(BaseRepository[EncryptionKey]):
    """Repository for EncryptionKey versions."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, EncryptionKey)

    async def get_version(self, tenant_id: uuid.UUID, version: int) -> EncryptionKey | None:
        stmt = select(EncryptionKey).where(EncryptionKey.tenant_id == tenant_id, EncryptionKey.version == version)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_active(self, tenant_id: uuid.UUID) -> EncryptionKey | None:
        stmt = select(EncryptionKey).where(
            EncryptionKey.tenant_id == tenant_id, EncryptionKey.status == KeyStatus.ACTIVE
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def max_version(self, tenant_id: uuid.UUID) -> int:
        stmt = select(func.max(EncryptionKey.version)).where(EncryptionKey.tenant_id == tenant_id)
        return int((await self._session.execute(stmt)).scalar() or 0)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class DirectoryUserRepository(BaseRepository[DirectoryUser]):
    """Repository for DirectoryUser and OrganizationMember."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, DirectoryUser)

    async def find_by_email(self, tenant_id: uuid.UUID, email: str) -> DirectoryUser | None:
        stmt = select(DirectoryUser).where(
            DirectoryUser.tenant_id == tenant_id,
            func.lower(DirectoryUser.email) == email.lower(),
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_membership(self, tenant_id: uuid.UUID, user_id: uuid.UUID) -> OrganizationMember | None:
        stmt = select(OrganizationMember).where(
            OrganizationMember.tenant_id == tenant_id,
            OrganizationMember.user_id == user_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def add_membership(self, membership: OrganizationMember) -> OrganizationMember:
        self._session.add(membership)
        await self._session.flush()
        return membership
