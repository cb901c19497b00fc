"""FastAPI routes for the compliance assistant and the vector index.

Routes:
    POST   /ai/index - index one source
    POST   /ai/index/batch - index many sources
    POST   /ai/search - similarity search
    GET    /ai/recommendations - content related to recent questions
    GET    /ai/index/stats - embedding counts
    POST   /ai/index/cleanup - remove orphaned embeddings (admin)
    POST   /ai/sessions - open a session
    GET    /ai/sessions - the caller's sessions
    GET    /ai/sessions/{session_id}/queries - queries of a session
    POST   /ai/sessions/{session_id}/close - close a session
    POST   /ai/sessions/{session_id}/ask - ask a question
    POST   /ai/queries/{query_id}/feedback - rate an answer
    GET    /ai/analytics - usage analytics
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import (
    AIQueryRepository,
    ControlRepository,
    EmbeddingRepository,
    EvidenceRepository,
    PolicyRepository,
    RiskRepository,
)
from complianceos.ai.service import AIAssistantService
from complianceos.ai.vector_engine import DEFAULT_MIN_SIMILARITY, VectorSearchEngine
from complianceos.api.dependencies import get_activity_service, get_ai_client, get_correlation_id, get_event_publisher
from complianceos.common.auth import ADMIN_ROLES, TenantContext, get_current_user, require_platform_role
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.core.interfaces import IAIClient, IEventPublisher
from complianceos.core.models import AIFeedback, AISession, EmbeddingSourceType
from complianceos.core.services import ActivityService

router = APIRouter(prefix="/ai", tags=["AI Assistant"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_vector_engine(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    ai_client: Annotated[IAIClient, Depends(get_ai_client)],
) -> VectorSearchEngine:
    return VectorSearchEngine(
        embedding_repo=EmbeddingRepository(session),
        query_repo=AIQueryRepository(session),
        source_repos={
            EmbeddingSourceType.EVIDENCE: EvidenceRepository(session),
            EmbeddingSourceType.POLICY: PolicyRepository(session),
            EmbeddingSourceType.CONTROL: ControlRepository(session),
            EmbeddingSourceType.RISK: RiskRepository(session),
        },
        ai_client=ai_client,
    )


def get_assistant_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    engine: Annotated[VectorSearchEngine, Depends(get_vector_engine)],
    ai_client: Annotated[IAIClient, Depends(get_ai_client)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> AIAssistantService:
    return AIAssistantService(
        session_repo=BaseRepository(session, AISession),
        query_repo=AIQueryRepository(session),
        feedback_repo=BaseRepository(session, AIFeedback),
        vector_engine=engine,
        ai_client=ai_client,
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Admin = Annotated[TenantContext, Depends(require_platform_role(*ADMIN_ROLES))]
Engine = Annotated[VectorSearchEngine, Depends(get_vector_engine)]
Assistant = Annotated[AIAssistantService, Depends(get_assistant_service)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class IndexRequest(BaseModel):
    source_type: str
    source_id: uuid.UUID


class BatchIndexRequest(BaseModel):
    items: list[IndexRequest] = Field(..., min_length=1, max_length=500)


class IndexResponse(BaseModel):
    indexed: list[str]
    failed: int


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    source_types: list[str] | None = None
    limit: int = Field(default=10, ge=1, le=50)
    min_similarity: float = Field(default=DEFAULT_MIN_SIMILARITY, ge=0.0, le=1.0)


class SearchResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_type: str
    source_id: uuid.UUID
    content: str
    similarity: float
    metadata: dict[str, Any]


class SessionCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    context: dict[str, Any] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    title: str | None
    context: dict[str, Any]
    is_active: bool
    query_count: int
    last_activity: datetime | None
    created_at: datetime


class AskRequest(BaseModel):
    query: str = Field(..., min_length=1)
    source_types: list[str] | None = None


class QueryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    session_id: uuid.UUID
    query_text: str
    response_text: str | None
    status: str
    sources: list[dict[str, Any]]
    confidence: float | None
    response_time_ms: int | None
    error_message: str | None
    created_at: datetime


class FeedbackRequest(BaseModel):
    feedback_type: str
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = None


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    query_id: uuid.UUID
    feedback_type: str
    rating: int | None
    comment: str | None
    created_at: datetime


# ---------------------------------------------------------------------------
# Vector index
# ---------------------------------------------------------------------------


@router.post("/index", response_model=IndexResponse, status_code=status.HTTP_201_CREATED)
async def index_source(body: IndexRequest, tenant: Tenant, engine: Engine) -> Any:
    indexed = await engine.index_source(tenant, body.source_type, body.source_id)
    return {"indexed": [indexed], "failed": 0}


@router.post("/index/batch", response_model=IndexResponse)
async def batch_index(body: BatchIndexRequest, tenant: Tenant, engine: Engine) -> Any:
    results = await engine.batch_index(tenant, [(item.source_type, item.source_id) for item in body.items])
    return {"indexed": results, "failed": sum(1 for r in results if not r)}


@router.get("/index/stats")
async def index_stats(tenant: Tenant, engine: Engine) -> dict[str, Any]:
    return await engine.stats(tenant)


@router.post("/index/cleanup")
async def cleanup_index(tenant: Admin, engine: Engine) -> dict[str, int]:
    return {"deleted": await engine.cleanup_orphans(tenant)}


@router.post("/search", response_model=list[SearchResultResponse])
async def search(body: SearchRequest, tenant: Tenant, engine: Engine) -> Any:
    return await engine.search(
        tenant, body.query, body.source_types, limit=body.limit, min_similarity=body.min_similarity
    )


@router.get("/recommendations", response_model=list[SearchResultResponse])
async def recommendations(tenant: Tenant, engine: Engine) -> Any:
    return await engine.recommendations(tenant)


# ---------------------------------------------------------------------------
# Sessions and questions
# ---------------------------------------------------------------------------


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionCreateRequest,
    tenant: Tenant,
    assistant: Assistant,
    correlation_id: CorrelationId,
) -> Any:
    return await assistant.create_session(tenant, title=body.title, context=body.context, correlation_id=correlation_id)


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(tenant: Tenant, assistant: Assistant, include_closed: bool = False) -> Any:
    return await assistant.list_sessions(tenant, active_only=not include_closed)


@router.get("/sessions/{session_id}/queries", response_model=list[QueryResponse])
async def list_session_queries(session_id: uuid.UUID, tenant: Tenant, assistant: Assistant) -> Any:
    return await assistant.list_queries(session_id, tenant)


@router.post("/sessions/{session_id}/close", response_model=SessionResponse)
async def close_session(
    session_id: uuid.UUID,
    tenant: Tenant,
    assistant: Assistant,
    correlation_id: CorrelationId,
) -> Any:
    return await assistant.close_session(session_id, tenant, correlation_id)


@router.post("/sessions/{session_id}/ask", response_model=QueryResponse)
async def ask(
    session_id: uuid.UUID,
    body: AskRequest,
    tenant: Tenant,
    assistant: Assistant,
    correlation_id: CorrelationId,
) -> Any:
    return await assistant.ask(session_id, tenant, body.query, body.source_types, correlation_id)


@router.post("/queries/{query_id}/feedback", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
async def submit_feedback(
    query_id: uuid.UUID,
    body: FeedbackRequest,
    tenant: Tenant,
    assistant: Assistant,
    correlation_id: CorrelationId,
) -> Any:
    return await assistant.submit_feedback(
        query_id,
        tenant,
        feedback_type=body.feedback_type,
        rating=body.rating,
        comment=body.comment,
        correlation_id=correlation_id,
    )


@router.get("/analytics")
async def analytics(tenant: Tenant, assistant: Assistant) -> dict[str, Any]:
    return await assistant.analytics(tenant)
