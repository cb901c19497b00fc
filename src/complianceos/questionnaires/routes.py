"""FastAPI routes for questionnaires, answer suggestions and the answer library.

Routes:
    POST   /questionnaires - create with questions
    POST   /questionnaires/import - create from an uploaded CSV (UPLOADED -> PARSING -> PARSED)
    GET    /questionnaires - list (filter by status)
    GET    /questionnaires/stats - counts by stage and overdue
    GET    /questionnaires/{questionnaire_id} - questions, answers and progress
    POST   /questionnaires/{questionnaire_id}/assign - assign (-> IN_PROGRESS)
    POST   /questionnaires/{questionnaire_id}/status - set status
    GET    /questionnaires/{questionnaire_id}/export - CSV export
    PUT    /questionnaires/questions/{question_id}/answer - save a DRAFT answer
    POST   /questionnaires/questions/{question_id}/submit - submit the answer
    POST   /questionnaires/questions/{question_id}/review - approve / reject / request revision
    GET    /questionnaires/questions/{question_id}/suggestions - top 5 suggested answers
    POST   /questionnaires/questions/{question_id}/promote - copy the answer into the library

    GET    /questionnaires/library - list entries
    POST   /questionnaires/library - create entry
    GET    /questionnaires/library/search - substring search
    GET    /questionnaires/library/stats - library statistics
    GET    /questionnaires/library/improvements - entries worth revisiting
    GET    /questionnaires/library/export - CSV export
    POST   /questionnaires/library/import - CSV import
    GET    /questionnaires/library/{entry_id} - get entry
    PATCH  /questionnaires/library/{entry_id} - update entry
    DELETE /questionnaires/library/{entry_id} - deactivate entry
    POST   /questionnaires/library/{entry_id}/use - record a use
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import AnswerLibraryRepository, EvidenceRepository, QuestionRepository
from complianceos.api.dependencies import get_activity_service, get_correlation_id, get_event_publisher
from complianceos.common.auth import TenantContext, get_current_user
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import AnswerCategory, Questionnaire, QuestionType
from complianceos.core.services import ActivityService
from complianceos.questionnaires.library import AnswerLibraryService
from complianceos.questionnaires.service import QuestionnaireService
from complianceos.questionnaires.suggestions import AnswerSuggestionEngine

router = APIRouter(prefix="/questionnaires", tags=["Questionnaires"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_questionnaire_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> QuestionnaireService:
    return QuestionnaireService(
        questionnaire_repo=BaseRepository(session, Questionnaire),
        question_repo=QuestionRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_library_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> AnswerLibraryService:
    return AnswerLibraryService(
        library_repo=AnswerLibraryRepository(session),
        question_repo=QuestionRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_suggestion_engine(session: Annotated[AsyncSession, Depends(get_db_session)]) -> AnswerSuggestionEngine:
    return AnswerSuggestionEngine(
        question_repo=QuestionRepository(session),
        library_repo=AnswerLibraryRepository(session),
        evidence_repo=EvidenceRepository(session),
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Service = Annotated[QuestionnaireService, Depends(get_questionnaire_service)]
Library = Annotated[AnswerLibraryService, Depends(get_library_service)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class QuestionInput(BaseModel):
    question_text: str = Field(..., min_length=1)
    question_type: str = QuestionType.TEXT
    section: str | None = None
    control_mapping: list[uuid.UUID] = Field(default_factory=list)
    risk_level: str | None = None


class QuestionnaireCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    requester_name: str | None = None
    due_date: datetime | None = None
    questions: list[QuestionInput] = Field(default_factory=list)


class QuestionnaireImportRequest(BaseModel):
    csv: str = Field(..., min_length=1, description="Questionnaire CSV, as a question table or as sent by the customer")
    title: str | None = Field(default=None, max_length=500)
    requester_name: str | None = None
    due_date: datetime | None = None


class QuestionnaireResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    requester_name: str | None
    status: str
    due_date: datetime | None
    assigned_to: uuid.UUID | None
    completion_date: datetime | None
    created_by: uuid.UUID
    created_at: datetime
    updated_at: datetime


class QuestionnairePage(BaseModel):
    items: list[QuestionnaireResponse]
    page: int
    limit: int
    total: int
    pages: int


class QuestionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    question_text: str
    question_type: str
    section: str | None
    order_index: int
    keywords: list[str]
    control_mapping: list[str]
    risk_level: str | None


class AnswerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    question_id: uuid.UUID
    questionnaire_id: uuid.UUID
    answer_text: str
    status: str
    confidence: float | None
    source_type: str | None
    evidence_ids: list[str]
    created_by: uuid.UUID
    reviewed_by: uuid.UUID | None
    reviewed_at: datetime | None
    review_notes: str | None
    updated_at: datetime


class QuestionWithAnswer(BaseModel):
    question: QuestionResponse
    answer: AnswerResponse | None


class Progress(BaseModel):
    total_questions: int
    answered: int
    approved: int
    completion_percentage: float


class QuestionnaireDetail(BaseModel):
    questionnaire: QuestionnaireResponse
    questions: list[QuestionWithAnswer]
    progress: Progress


class AssignRequest(BaseModel):
    assignee_id: uuid.UUID


class StatusRequest(BaseModel):
    status: str


class AnswerSaveRequest(BaseModel):
    answer_text: str = Field(..., min_length=1)
    evidence_ids: list[uuid.UUID] | None = None
    confidence: float | None = Field(default=None, ge=0, le=100)
    source_type: str | None = None


class AnswerReviewRequest(BaseModel):
    decision: str
    notes: str | None = None


class SuggestionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    suggested_answer: str
    confidence_score: float
    source_type: str
    source_id: uuid.UUID | None
    evidence_ids: list[str]
    reasoning: str
    metadata: dict[str, Any]


class PromoteRequest(BaseModel):
    answer_text: str | None = None


class LibraryEntryCreateRequest(BaseModel):
    category: str = AnswerCategory.GENERAL_SECURITY
    standard_answer: str = Field(..., min_length=1)
    key_phrases: list[str] = Field(default_factory=list)
    evidence_references: list[str] = Field(default_factory=list)


class LibraryEntryUpdateRequest(BaseModel):
    category: str | None = None
    standard_answer: str | None = Field(default=None, min_length=1)
    key_phrases: list[str] | None = None
    evidence_references: list[str] | None = None
    is_active: bool | None = None


class LibraryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    category: str
    key_phrases: list[str]
    standard_answer: str
    evidence_references: list[str]
    usage_count: int
    confidence_score: int
    last_used_at: datetime | None
    is_active: bool
    created_by: uuid.UUID
    created_at: datetime


class LibraryEntryPage(BaseModel):
    items: list[LibraryEntryResponse]
    page: int
    limit: int
    total: int
    pages: int


class CsvImportRequest(BaseModel):
    csv: str = Field(..., min_length=1, description="CSV text with category and standard_answer columns")


class CsvImportResponse(BaseModel):
    imported: int
    skipped: int
    errors: list[str]


# ---------------------------------------------------------------------------
# Answer library (declared before /{questionnaire_id} so the paths do not collide)
# ---------------------------------------------------------------------------


@router.get("/library", response_model=LibraryEntryPage)
async def list_library_entries(
    tenant: Tenant,
    library: Library,
    category: str | None = None,
    include_inactive: bool = False,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await library.list_entries(
        tenant, category=category, active_only=not include_inactive, page=page, page_size=page_size
    )


@router.post("/library", response_model=LibraryEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_library_entry(
    body: LibraryEntryCreateRequest,
    tenant: Tenant,
    library: Library,
    correlation_id: CorrelationId,
) -> Any:
    return await library.create_entry(
        tenant,
        category=body.category,
        standard_answer=body.standard_answer,
        key_phrases=body.key_phrases,
        evidence_references=body.evidence_references,
        correlation_id=correlation_id,
    )


@router.get("/library/search", response_model=list[LibraryEntryResponse])
async def search_library(
    tenant: Tenant,
    library: Library,
    q: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await library.search(tenant, q, limit=limit)


@router.get("/library/stats")
async def library_stats(tenant: Tenant, library: Library) -> dict[str, Any]:
    return await library.stats(tenant)


@router.get("/library/improvements")
async def library_improvements(tenant: Tenant, library: Library) -> list[dict[str, Any]]:
    return await library.suggest_improvements(tenant)


@router.get("/library/export", response_class=PlainTextResponse)
async def export_library(tenant: Tenant, library: Library) -> PlainTextResponse:
    content = await library.export_csv(tenant)
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="answer-library.csv"'},
    )


@router.post("/library/import", response_model=CsvImportResponse)
async def import_library(
    body: CsvImportRequest,
    tenant: Tenant,
    library: Library,
    correlation_id: CorrelationId,
) -> Any:
    return await library.import_csv(tenant, body.csv, correlation_id=correlation_id)


@router.get("/library/{entry_id}", response_model=LibraryEntryResponse)
async def get_library_entry(entry_id: uuid.UUID, tenant: Tenant, library: Library) -> Any:
    return await library.get_entry(entry_id, tenant)


@router.patch("/library/{entry_id}", response_model=LibraryEntryResponse)
async def update_library_entry(
    entry_id: uuid.UUID,
    body: LibraryEntryUpdateRequest,
    tenant: Tenant,
    library: Library,
    correlation_id: CorrelationId,
) -> Any:
    return await library.update_entry(entry_id, tenant, body.model_dump(exclude_unset=True), correlation_id)


@router.delete("/library/{entry_id}", response_model=LibraryEntryResponse)
async def deactivate_library_entry(
    entry_id: uuid.UUID,
    tenant: Tenant,
    library: Library,
    correlation_id: CorrelationId,
) -> Any:
    return await library.deactivate_entry(entry_id, tenant, correlation_id)


@router.post("/library/{entry_id}/use", response_model=LibraryEntryResponse)
async def record_library_usage(
    entry_id: uuid.UUID,
    tenant: Tenant,
    library: Library,
    correlation_id: CorrelationId,
) -> Any:
    return await library.record_usage(entry_id, tenant, correlation_id)


# ---------------------------------------------------------------------------
# Questions and answers
# ---------------------------------------------------------------------------


@router.put("/questions/{question_id}/answer", response_model=AnswerResponse)
async def save_answer(
    question_id: uuid.UUID,
    body: AnswerSaveRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.save_answer(
        question_id,
        tenant,
        answer_text=body.answer_text,
        evidence_ids=body.evidence_ids,
        confidence=body.confidence,
        source_type=body.source_type,
        correlation_id=correlation_id,
    )


@router.post("/questions/{question_id}/submit", response_model=AnswerResponse)
async def submit_answer(
    question_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.submit_answer(question_id, tenant, correlation_id)


@router.post("/questions/{question_id}/review", response_model=AnswerResponse)
async def review_answer(
    question_id: uuid.UUID,
    body: AnswerReviewRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.review_answer(question_id, tenant, body.decision, body.notes, correlation_id)


@router.get("/questions/{question_id}/suggestions", response_model=list[SuggestionResponse])
async def suggest_answers(
    question_id: uuid.UUID,
    tenant: Tenant,
    engine: Annotated[AnswerSuggestionEngine, Depends(get_suggestion_engine)],
) -> Any:
    return await engine.suggest(question_id, tenant)


@router.post(
    "/questions/{question_id}/promote",
    response_model=LibraryEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def promote_answer(
    question_id: uuid.UUID,
    body: PromoteRequest,
    tenant: Tenant,
    library: Library,
    correlation_id: CorrelationId,
) -> Any:
    return await library.promote_answer(question_id, tenant, body.answer_text, correlation_id)


# ---------------------------------------------------------------------------
# Questionnaires
# ---------------------------------------------------------------------------


@router.post("", response_model=QuestionnaireResponse, status_code=status.HTTP_201_CREATED)
async def create_questionnaire(
    body: QuestionnaireCreateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_questionnaire(
        tenant,
        title=body.title,
        questions=[q.model_dump() for q in body.questions],
        requester_name=body.requester_name,
        due_date=body.due_date,
        correlation_id=correlation_id,
    )


@router.post("/import", response_model=QuestionnaireResponse, status_code=status.HTTP_201_CREATED)
async def import_questionnaire(
    body: QuestionnaireImportRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.import_csv(
        tenant,
        body.csv,
        title=body.title,
        requester_name=body.requester_name,
        due_date=body.due_date,
        correlation_id=correlation_id,
    )


@router.get("", response_model=QuestionnairePage)
async def list_questionnaires(
    tenant: Tenant,
    service: Service,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await service.list_questionnaires(tenant, status=status_filter, page=page, page_size=page_size)


@router.get("/stats")
async def questionnaire_stats(tenant: Tenant, service: Service) -> dict[str, Any]:
    return await service.stats(tenant)


@router.get("/{questionnaire_id}", response_model=QuestionnaireDetail)
async def get_questionnaire(questionnaire_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_detail(questionnaire_id, tenant)


@router.post("/{questionnaire_id}/assign", response_model=QuestionnaireResponse)
async def assign_questionnaire(
    questionnaire_id: uuid.UUID,
    body: AssignRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.assign(questionnaire_id, tenant, body.assignee_id, correlation_id)


@router.post("/{questionnaire_id}/status", response_model=QuestionnaireResponse)
async def update_questionnaire_status(
    questionnaire_id: uuid.UUID,
    body: StatusRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_status(questionnaire_id, tenant, body.status, correlation_id)


@router.get("/{questionnaire_id}/export", response_class=PlainTextResponse)
async def export_questionnaire(
    questionnaire_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> PlainTextResponse:
    content = await service.export_csv(questionnaire_id, tenant, correlation_id)
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="questionnaire-{questionnaire_id}.csv"'},
    )
