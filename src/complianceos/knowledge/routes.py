"""FastAPI routes for the knowledge base.

Routes:
    POST   /knowledge/articles - create article (admin)
    GET    /knowledge/articles - list articles (search, status, content type, category, framework)
    GET    /knowledge/articles/{article_id} - get article
    PATCH  /knowledge/articles/{article_id} - update article (admin)
    DELETE /knowledge/articles/{article_id} - delete article (admin)
    GET    /knowledge/articles/{article_id}/versions - previous versions
    POST   /knowledge/articles/{article_id}/view - count a view
    POST   /knowledge/articles/{article_id}/rating - rate 1-5
    PUT    /knowledge/articles/{article_id}/bookmark - bookmark for the caller
    DELETE /knowledge/articles/{article_id}/bookmark - remove the caller's bookmark
    GET    /knowledge/bookmarks - the caller's bookmarked articles
    POST   /knowledge/categories - create category (admin)
    GET    /knowledge/categories - list active categories
    PATCH  /knowledge/categories/{category_id} - update category (admin)
    DELETE /knowledge/categories/{category_id} - delete category (admin)
    POST   /knowledge/terms - define a glossary term (admin)
    GET    /knowledge/terms - list active terms
    GET    /knowledge/terms/{term_id} - get term
    PATCH  /knowledge/terms/{term_id} - update term (admin)
    DELETE /knowledge/terms/{term_id} - delete term (admin)
    GET    /knowledge/search - search articles, terms and categories
    GET    /knowledge/contextual-help - articles and terms for a framework, control or phrase
    GET    /knowledge/stats - knowledge base statistics
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import (
    ControlRepository,
    FrameworkRepository,
    KnowledgeArticleRepository,
    KnowledgeBookmarkRepository,
    KnowledgeCategoryRepository,
    KnowledgeTermRepository,
)
from complianceos.api.dependencies import get_activity_service, get_correlation_id, get_event_publisher
from complianceos.common.auth import ADMIN_ROLES, TenantContext, get_current_user, require_platform_role
from complianceos.common.database import get_db_session
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import ArticleContentType
from complianceos.core.services import ActivityService
from complianceos.knowledge.service import KnowledgeService

router = APIRouter(prefix="/knowledge", tags=["Knowledge"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_knowledge_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> KnowledgeService:
    return KnowledgeService(
        article_repo=KnowledgeArticleRepository(session),
        category_repo=KnowledgeCategoryRepository(session),
        term_repo=KnowledgeTermRepository(session),
        bookmark_repo=KnowledgeBookmarkRepository(session),
        framework_repo=FrameworkRepository(session),
        control_repo=ControlRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Admin = Annotated[TenantContext, Depends(require_platform_role(*ADMIN_ROLES))]
Service = Annotated[KnowledgeService, Depends(get_knowledge_service)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class ArticleCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    content: str = Field(..., min_length=1)
    summary: str | None = None
    content_type: str = ArticleContentType.ARTICLE
    category_id: uuid.UUID | None = None
    framework_id: uuid.UUID | None = None
    control_id: uuid.UUID | None = None
    tags: list[str] = Field(default_factory=list)


class ArticleUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=500)
    content: str | None = None
    summary: str | None = None
    content_type: str | None = None
    status: str | None = None
    category_id: uuid.UUID | None = None
    framework_id: uuid.UUID | None = None
    control_id: uuid.UUID | None = None
    tags: list[str] | None = None
    change_log: str | None = None


class ArticleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    slug: str
    summary: str | None
    content: str
    content_type: str
    status: str
    category_id: uuid.UUID | None
    framework_id: uuid.UUID | None
    control_id: uuid.UUID | None
    tags: list[str]
    version: int
    view_count: int
    rating: float | None
    rating_count: int
    published_at: datetime | None
    author_id: uuid.UUID
    created_at: datetime
    updated_at: datetime


class ArticlePage(BaseModel):
    items: list[ArticleResponse]
    page: int
    limit: int
    total: int
    pages: int


class ArticleVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    version: int
    title: str
    summary: str | None
    content: str
    change_log: str | None
    created_by: uuid.UUID
    created_at: datetime


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    parent_id: uuid.UUID | None = None
    framework_id: uuid.UUID | None = None
    order_index: int = 0


class CategoryUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    order_index: int | None = None
    is_active: bool | None = None


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    parent_id: uuid.UUID | None
    framework_id: uuid.UUID | None
    order_index: int
    is_active: bool


class TermCreateRequest(BaseModel):
    term: str = Field(..., min_length=1, max_length=255)
    definition: str = Field(..., min_length=1)
    short_definition: str | None = Field(default=None, max_length=500)
    category_id: uuid.UUID | None = None
    framework_id: uuid.UUID | None = None
    synonyms: list[str] = Field(default_factory=list)
    acronyms: list[str] = Field(default_factory=list)
    examples: list[str] = Field(default_factory=list)


class TermUpdateRequest(BaseModel):
    term: str | None = Field(default=None, max_length=255)
    definition: str | None = None
    short_definition: str | None = Field(default=None, max_length=500)
    category_id: uuid.UUID | None = None
    synonyms: list[str] | None = None
    acronyms: list[str] | None = None
    examples: list[str] | None = None
    is_active: bool | None = None


class TermResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    term: str
    definition: str
    short_definition: str | None
    category_id: uuid.UUID | None
    framework_id: uuid.UUID | None
    synonyms: list[str]
    acronyms: list[str]
    examples: list[str]
    view_count: int
    is_active: bool


class TermPage(BaseModel):
    items: list[TermResponse]
    page: int
    limit: int
    total: int
    pages: int


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


@router.post("/articles", response_model=ArticleResponse, status_code=status.HTTP_201_CREATED)
async def create_article(
    body: ArticleCreateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_article(
        tenant,
        title=body.title,
        content=body.content,
        summary=body.summary,
        content_type=body.content_type,
        category_id=body.category_id,
        framework_id=body.framework_id,
        control_id=body.control_id,
        tags=body.tags,
        correlation_id=correlation_id,
    )


@router.get("/articles", response_model=ArticlePage)
async def list_articles(
    tenant: Tenant,
    service: Service,
    search: str | None = None,
    article_status: Annotated[str | None, Query(alias="status")] = None,
    content_type: str | None = None,
    category_id: uuid.UUID | None = None,
    framework_id: uuid.UUID | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await service.list_articles(
        tenant,
        search=search,
        status=article_status,
        content_type=content_type,
        category_id=category_id,
        framework_id=framework_id,
        page=page,
        page_size=page_size,
    )


@router.get("/articles/{article_id}", response_model=ArticleResponse)
async def get_article(article_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_article(article_id, tenant)


@router.patch("/articles/{article_id}", response_model=ArticleResponse)
async def update_article(
    article_id: uuid.UUID,
    body: ArticleUpdateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    changes = body.model_dump(exclude_unset=True)
    change_log = changes.pop("change_log", None)
    return await service.update_article(article_id, tenant, changes, change_log, correlation_id)


@router.delete("/articles/{article_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_article(
    article_id: uuid.UUID,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.delete_article(article_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/articles/{article_id}/versions", response_model=list[ArticleVersionResponse])
async def list_article_versions(article_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.list_versions(article_id, tenant)


@router.post("/articles/{article_id}/view")
async def record_view(article_id: uuid.UUID, tenant: Tenant, service: Service) -> dict[str, Any]:
    return {"article_id": str(article_id), "view_count": await service.record_view(article_id, tenant)}


@router.post("/articles/{article_id}/rating")
async def rate_article(
    article_id: uuid.UUID,
    body: RatingRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> dict[str, Any]:
    article = await service.rate_article(article_id, tenant, body.rating, correlation_id)
    return {"article_id": str(article.id), "rating": article.rating, "count": article.rating_count}


@router.put("/articles/{article_id}/bookmark", status_code=status.HTTP_204_NO_CONTENT)
async def bookmark_article(
    article_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.bookmark_article(article_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/articles/{article_id}/bookmark", status_code=status.HTTP_204_NO_CONTENT)
async def remove_bookmark(
    article_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.remove_bookmark(article_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/bookmarks", response_model=list[ArticleResponse])
async def list_bookmarks(tenant: Tenant, service: Service) -> Any:
    return await service.list_bookmarks(tenant)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


@router.post("/categories", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_category(
    body: CategoryCreateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_category(
        tenant,
        name=body.name,
        description=body.description,
        parent_id=body.parent_id,
        framework_id=body.framework_id,
        order_index=body.order_index,
        correlation_id=correlation_id,
    )


@router.get("/categories", response_model=list[CategoryResponse])
async def list_categories(
    tenant: Tenant,
    service: Service,
    search: str | None = None,
    framework_id: uuid.UUID | None = None,
    parent_id: uuid.UUID | None = None,
) -> Any:
    return await service.list_categories(tenant, search=search, framework_id=framework_id, parent_id=parent_id)


@router.patch("/categories/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: uuid.UUID,
    body: CategoryUpdateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_category(category_id, tenant, body.model_dump(exclude_unset=True), correlation_id)


@router.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(
    category_id: uuid.UUID,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.delete_category(category_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Glossary terms
# ---------------------------------------------------------------------------


@router.post("/terms", response_model=TermResponse, status_code=status.HTTP_201_CREATED)
async def create_term(
    body: TermCreateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_term(
        tenant,
        term=body.term,
        definition=body.definition,
        short_definition=body.short_definition,
        category_id=body.category_id,
        framework_id=body.framework_id,
        synonyms=body.synonyms,
        acronyms=body.acronyms,
        examples=body.examples,
        correlation_id=correlation_id,
    )


@router.get("/terms", response_model=TermPage)
async def list_terms(
    tenant: Tenant,
    service: Service,
    search: str | None = None,
    framework_id: uuid.UUID | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await service.list_terms(tenant, search=search, framework_id=framework_id, page=page, page_size=page_size)


@router.get("/terms/{term_id}", response_model=TermResponse)
async def get_term(term_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_term(term_id, tenant)


@router.patch("/terms/{term_id}", response_model=TermResponse)
async def update_term(
    term_id: uuid.UUID,
    body: TermUpdateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_term(term_id, tenant, body.model_dump(exclude_unset=True), correlation_id)


@router.delete("/terms/{term_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_term(
    term_id: uuid.UUID,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.delete_term(term_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Search, contextual help, statistics
# ---------------------------------------------------------------------------


@router.get("/search")
async def search(
    tenant: Tenant,
    service: Service,
    q: str = "",
    search_type: Annotated[str, Query(alias="type")] = "all",
    framework_id: uuid.UUID | None = None,
    category_id: uuid.UUID | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict[str, Any]:
    return await service.search(
        tenant,
        q,
        search_type=search_type,
        framework_id=framework_id,
        category_id=category_id,
        page=page,
        page_size=page_size,
    )


@router.get("/contextual-help")
async def contextual_help(
    tenant: Tenant,
    service: Service,
    framework_id: uuid.UUID | None = None,
    control_id: uuid.UUID | None = None,
    term: str | None = None,
) -> dict[str, Any]:
    return await service.contextual_help(tenant, framework_id=framework_id, control_id=control_id, term=term)


@router.get("/stats")
async def knowledge_stats(tenant: Tenant, service: Service) -> dict[str, Any]:
    return await service.stats(tenant)
