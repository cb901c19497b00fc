"""Compliance assistant: sessions, questions answered over indexed artifacts, feedback.

ask() flow:
    1. record the AIQuery as PROCESSING
    2. vector search for relevant sources
    3. chat completion over a prompt built from those sources
    4. mark COMPLETED with sources, confidence and response time

confidence = min(average source similarity x 1.2, 1.0), or 0 without sources.
When any step fails the query is committed as FAILED and the error is re-raised.
"""

import time
import uuid
from typing import Any

from complianceos.ai.vector_engine import VectorSearchEngine, VectorSearchResult
from complianceos.common.auth import TenantContext
from complianceos.common.errors import NotFoundError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IAIClient, IEventPublisher
from complianceos.core.models import AIFeedback, AIQuery, AIQueryStatus, AISession, FeedbackType
from complianceos.core.services import ActivityService, TrackedService, utcnow

logger = get_logger(__name__)

CONFIDENCE_BOOST = 1.2
CONTEXT_SOURCES = 5
TOP_QUERIES = 10


def answer_confidence(sources: list[VectorSearchResult]) -> float:
    if not sources:
        return 0.0
    average = sum(s.similarity for s in sources) / len(sources)
    return min(average * CONFIDENCE_BOOST, 1.0)


def build_prompt(query: str, sources: list[VectorSearchResult]) -> str:
    context = "\n\n".join(f"{s.source_type}: {s.content}" for s in sources)
    return f"Context:\n{context}\n\nQuery: {query}"


class AIAssistantService(TrackedService):
    """Sessions and question answering for the compliance assistant.

    Args:
        session_repo: Repository for AISession.
        query_repo: AIQueryRepository.
        feedback_repo: Repository for AIFeedback.
        vector_engine: VectorSearchEngine used to find context.
        ai_client: Chat completion provider.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        session_repo: Any,
        query_repo: Any,
        feedback_repo: Any,
        vector_engine: VectorSearchEngine,
        ai_client: IAIClient,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._session_repo = session_repo
        self._query_repo = query_repo
        self._feedback_repo = feedback_repo
        self._vector_engine = vector_engine
        self._ai_client = ai_client

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        tenant: TenantContext,
        title: str | None = None,
        context: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> AISession:
        session = await self._session_repo.add(
            AISession(
                tenant_id=tenant.tenant_id,
                user_id=tenant.user_id,
                title=title,
                context=context or {},
                is_active=True,
                query_count=0,
                last_activity=utcnow(),
            )
        )
        await self._track(
            tenant, "compliance.ai_session.created", "ai_session", session.id, "create", {}, correlation_id
        )
        return session

    async def list_sessions(self, tenant: TenantContext, active_only: bool = True) -> list[AISession]:
        """The caller's own sessions, most recently active first."""
        filters: list[Any] = [AISession.user_id == tenant.user_id]
        if active_only:
            filters.append(AISession.is_active.is_(True))
        return await self._session_repo.list_where(
            tenant.tenant_id, filters, order_by=[AISession.last_activity.desc()], limit=100
        )

    async def get_session(self, session_id: uuid.UUID, tenant: TenantContext) -> AISession:
        """A session owned by the caller. Other users' sessions are reported as missing."""
        session = await self._session_repo.get_by_id(session_id, tenant.tenant_id)
        if session.user_id != tenant.user_id:
            raise NotFoundError(resource="AISession", resource_id=str(session_id))
        return session

    async def list_queries(self, session_id: uuid.UUID, tenant: TenantContext) -> list[AIQuery]:
        await self.get_session(session_id, tenant)
        return await self._query_repo.list_where(
            tenant.tenant_id, [AIQuery.session_id == session_id], order_by=[AIQuery.created_at.asc()]
        )

    async def close_session(
        self, session_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> AISession:
        session = await self.get_session(session_id, tenant)
        session.is_active = False
        session = await self._session_repo.save(session)
        await self._track(
            tenant, "compliance.ai_session.closed", "ai_session", session.id, "close", {}, correlation_id
        )
        return session

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def ask(
        self,
        session_id: uuid.UUID,
        tenant: TenantContext,
        query_text: str,
        source_types: list[str] | None = None,
        correlation_id: str | None = None,
    ) -> AIQuery:
        """Answer a question using the tenant's indexed artifacts as context.

        Args:
            session_id: Active session owned by the caller.
            tenant: Caller context.
            query_text: The question.
            source_types: Restrict context to these source types.
            correlation_id: Request correlation ID.

        Returns:
            The COMPLETED AIQuery.

        Raises:
            ValidationError: On an empty question or a closed session.
            ExternalServiceError: If the AI provider fails (the query is stored as FAILED).
        """
        if not query_text.strip():
            raise ValidationError(message="Query text is required", field="query")
        session = await self.get_session(session_id, tenant)
        if not session.is_active:
            raise ValidationError(message="AI session is closed", field="session_id")

        query = await self._query_repo.add(
            AIQuery(
                tenant_id=tenant.tenant_id,
                session_id=session.id,
                user_id=tenant.user_id,
                query_text=query_text.strip(),
                status=AIQueryStatus.PROCESSING,
                sources=[],
            )
        )
        started = time.perf_counter()
        try:
            sources = await self._vector_engine.search(tenant, query.query_text, source_types, limit=CONTEXT_SOURCES)
            prompt = build_prompt(query.query_text, sources)
            response = await self._ai_client.complete([{"role": "user", "content": prompt}])
        except Exception as exc:
            query.status = AIQueryStatus.FAILED
            query.error_message = str(exc)
            query.response_time_ms = int((time.perf_counter() - started) * 1000)
            await self._query_repo.commit_failure(query)
            logger.error("AI query failed", query_id=str(query.id), session_id=str(session.id), error=str(exc))
            raise

        query.status = AIQueryStatus.COMPLETED
        query.response_text = response
        query.sources = [
            {"source_type": s.source_type, "source_id": str(s.source_id), "similarity": round(s.similarity, 4)}
            for s in sources
        ]
        query.confidence = answer_confidence(sources)
        query.response_time_ms = int((time.perf_counter() - started) * 1000)
        query = await self._query_repo.save(query)

        session.query_count += 1
        session.last_activity = utcnow()
        session.context = {**(session.context or {}), "last_query": query.query_text}
        await self._session_repo.save(session)

        logger.info(
            "AI query completed",
            query_id=str(query.id),
            sources=len(sources),
            confidence=query.confidence,
            response_time_ms=query.response_time_ms,
        )
        await self._track(
            tenant,
            "compliance.ai_query.completed",
            "ai_query",
            query.id,
            "ask",
            {"session_id": str(session.id), "sources": len(sources)},
            correlation_id,
        )
        return query

    async def submit_feedback(
        self,
        query_id: uuid.UUID,
        tenant: TenantContext,
        feedback_type: str,
        rating: int | None = None,
        comment: str | None = None,
        correlation_id: str | None = None,
    ) -> AIFeedback:
        if feedback_type not in FeedbackType.__members__:
            raise ValidationError(message=f"Unknown feedback type '{feedback_type}'", field="feedback_type")
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError(message="rating must be between 1 and 5", field="rating")

        query = await self._query_repo.get_by_id(query_id, tenant.tenant_id)
        feedback = await self._feedback_repo.add(
            AIFeedback(
                tenant_id=tenant.tenant_id,
                query_id=query.id,
                user_id=tenant.user_id,
                feedback_type=feedback_type,
                rating=rating,
                comment=comment,
            )
        )
        await self._track(
            tenant,
            "compliance.ai_query.feedback",
            "ai_query",
            query.id,
            "feedback",
            {"feedback_type": feedback_type, "rating": rating},
            correlation_id,
        )
        return feedback

    async def analytics(self, tenant: TenantContext) -> dict[str, Any]:
        total = await self._query_repo.count(tenant.tenant_id)
        avg_response_ms, avg_confidence = await self._query_repo.averages(tenant.tenant_id)
        feedback = await self._feedback_repo.count_by(tenant.tenant_id, AIFeedback.feedback_type)
        top = await self._query_repo.top_queries(tenant.tenant_id, limit=TOP_QUERIES)
        return {
            "total_queries": total,
            "average_response_time_ms": round(avg_response_ms, 2),
            "average_confidence": round(avg_confidence, 4),
            "feedback_by_type": feedback,
            "top_queries": [{"query": text, "count": count} for text, count in top],
        }
