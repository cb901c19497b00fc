"""Knowledge base: guidance articles, a category tree, a glossary and bookmarks.

Articles start as DRAFT and only PUBLISHED articles show up in search and
contextual help. Editing the title, summary or content snapshots the previous
text into KnowledgeArticleVersion and bumps the article version. Ratings are
kept as a running mean on the article itself.
"""

import re
import uuid
from typing import Any

from sqlalchemy import Text, cast, func, or_

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import ConflictError, NotFoundError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    ArticleContentType,
    ArticleStatus,
    KnowledgeArticle,
    KnowledgeArticleVersion,
    KnowledgeBookmark,
    KnowledgeCategory,
    KnowledgeTerm,
)
from complianceos.core.services import ActivityService, TrackedService, reject_nulls, utcnow

logger = get_logger(__name__)

MIN_QUERY_LENGTH = 2
# Per-type cap when searching everything at once.
MIXED_RESULTS_PER_TYPE = 5
CONTEXTUAL_HELP_LIMIT = 5
MIN_RATING = 1
MAX_RATING = 5

SEARCH_TYPES = ("all", "articles", "terms", "categories")

_ARTICLE_FIELDS = frozenset(
    {"title", "summary", "content", "content_type", "status", "category_id", "framework_id", "control_id", "tags"}
)
_ARTICLE_NON_NULLABLE = frozenset({"title", "content", "content_type", "status", "tags"})
_VERSIONED_FIELDS = ("title", "summary", "content")

_CATEGORY_FIELDS = frozenset({"name", "description", "order_index", "is_active"})
_CATEGORY_NON_NULLABLE = frozenset({"name", "order_index", "is_active"})

_TERM_FIELDS = frozenset(
    {"term", "definition", "short_definition", "category_id", "synonyms", "acronyms", "examples", "is_active"}
)
_TERM_NON_NULLABLE = frozenset({"term", "definition", "synonyms", "acronyms", "examples", "is_active"})

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def slugify(title: str) -> str:
    """Lowercase the title and collapse every run of other characters into one hyphen."""
    return _SLUG_SEPARATORS.sub("-", title.lower()).strip("-")


def _like(query: str) -> str:
    return f"%{query.lower()}%"


def article_text_match(query: str) -> Any:
    """Title, summary, content or any tag contains `query` (case-insensitive)."""
    pattern = _like(query)
    return or_(
        KnowledgeArticle.title.ilike(pattern),
        KnowledgeArticle.summary.ilike(pattern),
        KnowledgeArticle.content.ilike(pattern),
        func.lower(cast(KnowledgeArticle.tags, Text)).like(pattern),
    )


def term_text_match(query: str) -> Any:
    """Term, either definition, a synonym or an acronym contains `query`."""
    pattern = _like(query)
    return or_(
        KnowledgeTerm.term.ilike(pattern),
        KnowledgeTerm.definition.ilike(pattern),
        KnowledgeTerm.short_definition.ilike(pattern),
        func.lower(cast(KnowledgeTerm.synonyms, Text)).like(pattern),
        func.lower(cast(KnowledgeTerm.acronyms, Text)).like(pattern),
    )


def category_text_match(query: str) -> Any:
    pattern = _like(query)
    return or_(KnowledgeCategory.name.ilike(pattern), KnowledgeCategory.description.ilike(pattern))


def _short_definition(term: KnowledgeTerm, length: int) -> str:
    if term.short_definition:
        return term.short_definition
    if len(term.definition) <= length:
        return term.definition
    return term.definition[:length] + "..."


def _article_result(article: KnowledgeArticle) -> dict[str, Any]:
    return {
        "type": "article",
        "id": str(article.id),
        "title": article.title,
        "summary": article.summary,
        "content_type": article.content_type,
        "category_id": str(article.category_id) if article.category_id else None,
        "framework_id": str(article.framework_id) if article.framework_id else None,
        "view_count": article.view_count,
        "rating": article.rating,
        "tags": list(article.tags or []),
        "published_at": article.published_at.isoformat() if article.published_at else None,
    }


def _term_result(term: KnowledgeTerm) -> dict[str, Any]:
    return {
        "type": "term",
        "id": str(term.id),
        "title": term.term,
        "summary": _short_definition(term, 200),
        "definition": term.definition,
        "synonyms": list(term.synonyms or []),
        "acronyms": list(term.acronyms or []),
        "framework_id": str(term.framework_id) if term.framework_id else None,
        "view_count": term.view_count,
    }


def _category_result(category: KnowledgeCategory) -> dict[str, Any]:
    return {
        "type": "category",
        "id": str(category.id),
        "title": category.name,
        "summary": category.description,
        "framework_id": str(category.framework_id) if category.framework_id else None,
    }


def _check_unknown(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(message=f"Fields not updatable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])


def _require_text(value: str, message: str, field: str) -> str:
    if not value.strip():
        raise ValidationError(message=message, field=field)
    return value.strip()


def _validate_article_enums(content_type: str | None = None, status: str | None = None) -> None:
    if content_type is not None and content_type not in ArticleContentType.__members__:
        raise ValidationError(message=f"Unknown content type '{content_type}'", field="content_type")
    if status is not None and status not in ArticleStatus.__members__:
        raise ValidationError(message=f"Unknown article status '{status}'", field="status")


def _clean_list(values: list[str]) -> list[str]:
    cleaned: list[str] = []
    for value in values:
        item = value.strip()
        if item and item not in cleaned:
            cleaned.append(item)
    return cleaned


class KnowledgeService(TrackedService):
    """Articles, categories, glossary terms, search, ratings and bookmarks.

    Args:
        article_repo: KnowledgeArticleRepository.
        category_repo: KnowledgeCategoryRepository.
        term_repo: KnowledgeTermRepository.
        bookmark_repo: KnowledgeBookmarkRepository.
        framework_repo: FrameworkRepository, to check framework references.
        control_repo: ControlRepository, to check control references.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        article_repo: Any,
        category_repo: Any,
        term_repo: Any,
        bookmark_repo: Any,
        framework_repo: Any,
        control_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._article_repo = article_repo
        self._category_repo = category_repo
        self._term_repo = term_repo
        self._bookmark_repo = bookmark_repo
        self._framework_repo = framework_repo
        self._control_repo = control_repo

    async def _check_references(
        self,
        tenant: TenantContext,
        category_id: uuid.UUID | None = None,
        framework_id: uuid.UUID | None = None,
        control_id: uuid.UUID | None = None,
    ) -> None:
        """Raise NotFoundError when a referenced category, framework or control is not in the tenant."""
        if category_id is not None:
            await self._category_repo.get_by_id(category_id, tenant.tenant_id)
        if framework_id is not None:
            await self._framework_repo.get_by_id(framework_id, tenant.tenant_id)
        if control_id is not None:
            await self._control_repo.get_by_id(control_id, tenant.tenant_id)

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    async def create_article(
        self,
        tenant: TenantContext,
        title: str,
        content: str,
        summary: str | None = None,
        content_type: str = ArticleContentType.ARTICLE,
        category_id: uuid.UUID | None = None,
        framework_id: uuid.UUID | None = None,
        control_id: uuid.UUID | None = None,
        tags: list[str] | None = None,
        correlation_id: str | None = None,
    ) -> KnowledgeArticle:
        """Create a DRAFT article at version 1.

        The slug is derived from the title and must be unique in the tenant.

        Raises:
            ValidationError: On a blank title or content, or an unknown content type.
            ConflictError: If another article already has the same slug.
            NotFoundError: If a referenced category, framework or control does not exist.
        """
        title = _require_text(title, "Article title is required", "title")
        content = _require_text(content, "Article content is required", "content")
        _validate_article_enums(content_type=content_type)
        slug = slugify(title)
        if not slug:
            raise ValidationError(message="Article title must contain letters or digits", field="title")
        if await self._article_repo.find_by_slug(tenant.tenant_id, slug) is not None:
            raise ConflictError(message=f"An article with the slug '{slug}' already exists")
        await self._check_references(tenant, category_id, framework_id, control_id)

        article = await self._article_repo.add(
            KnowledgeArticle(
                tenant_id=tenant.tenant_id,
                title=title,
                slug=slug,
                summary=summary,
                content=content,
                content_type=content_type,
                status=ArticleStatus.DRAFT,
                category_id=category_id,
                framework_id=framework_id,
                control_id=control_id,
                tags=_clean_list(tags or []),
                version=1,
                view_count=0,
                rating_count=0,
                author_id=tenant.user_id,
            )
        )
        await self._track(
            tenant,
            "compliance.knowledge_article.created",
            "knowledge_article",
            article.id,
            "create",
            {"slug": slug, "content_type": content_type},
            correlation_id,
        )
        return article

    async def get_article(self, article_id: uuid.UUID, tenant: TenantContext) -> KnowledgeArticle:
        return await self._article_repo.get_by_id(article_id, tenant.tenant_id)

    async def list_articles(
        self,
        tenant: TenantContext,
        search: str | None = None,
        status: str | None = None,
        content_type: str | None = None,
        category_id: uuid.UUID | None = None,
        framework_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        """Articles in any status, most recently published first, then newest."""
        filters: list[Any] = []
        if search and search.strip():
            filters.append(article_text_match(search.strip()))
        if status:
            filters.append(KnowledgeArticle.status == status)
        if content_type:
            filters.append(KnowledgeArticle.content_type == content_type)
        if category_id:
            filters.append(KnowledgeArticle.category_id == category_id)
        if framework_id:
            filters.append(KnowledgeArticle.framework_id == framework_id)
        rows, total = await self._article_repo.list_page(
            tenant.tenant_id,
            filters,
            page,
            page_size,
            order_by=[KnowledgeArticle.published_at.desc().nulls_last(), KnowledgeArticle.created_at.desc()],
        )
        return to_page(rows, total, page, page_size)

    async def update_article(
        self,
        article_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        change_log: str | None = None,
        correlation_id: str | None = None,
    ) -> KnowledgeArticle:
        """Apply a partial update.

        When the title, summary or content changes, the previous text is
        stored as a version row and the article version goes up by one. A new
        title gets a new slug, suffixed with the article id if another article
        already uses it. Publishing for the first time sets published_at.

        Raises:
            ValidationError: On unknown fields, cleared required fields, or bad enum values.
            NotFoundError: If the article or a referenced row does not exist.
        """
        _check_unknown(changes, _ARTICLE_FIELDS)
        reject_nulls(changes, _ARTICLE_NON_NULLABLE)
        if "title" in changes:
            changes = {**changes, "title": _require_text(changes["title"], "Article title is required", "title")}
        if "content" in changes:
            content = _require_text(changes["content"], "Article content is required", "content")
            changes = {**changes, "content": content}
        if "tags" in changes:
            changes = {**changes, "tags": _clean_list(changes["tags"])}
        _validate_article_enums(changes.get("content_type"), changes.get("status"))

        article = await self._article_repo.get_by_id(article_id, tenant.tenant_id)
        await self._check_references(
            tenant, changes.get("category_id"), changes.get("framework_id"), changes.get("control_id")
        )

        changed = sorted(name for name, value in changes.items() if getattr(article, name) != value)
        slug = article.slug
        if "title" in changed:
            slug = slugify(changes["title"])
            if not slug:
                raise ValidationError(message="Article title must contain letters or digits", field="title")
            if await self._article_repo.find_by_slug(tenant.tenant_id, slug, exclude_id=article.id) is not None:
                slug = f"{slug}-{article.id.hex[:8]}"

        if any(name in changed for name in _VERSIONED_FIELDS):
            await self._article_repo.add_version(
                KnowledgeArticleVersion(
                    tenant_id=tenant.tenant_id,
                    article_id=article.id,
                    version=article.version,
                    title=article.title,
                    summary=article.summary,
                    content=article.content,
                    change_log=change_log,
                    created_by=tenant.user_id,
                )
            )
            article.version += 1

        article.slug = slug
        if changes.get("status") == ArticleStatus.PUBLISHED and article.published_at is None:
            article.published_at = utcnow()

        for name, value in changes.items():
            setattr(article, name, value)
        article = await self._article_repo.save(article)

        await self._track(
            tenant,
            "compliance.knowledge_article.updated",
            "knowledge_article",
            article.id,
            "update",
            {"fields": changed, "version": article.version},
            correlation_id,
        )
        return article

    async def list_versions(self, article_id: uuid.UUID, tenant: TenantContext) -> list[KnowledgeArticleVersion]:
        await self._article_repo.get_by_id(article_id, tenant.tenant_id)
        return await self._article_repo.list_versions(tenant.tenant_id, article_id)

    async def delete_article(
        self, article_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        """Delete the article; its versions and bookmarks go with it."""
        article = await self._article_repo.get_by_id(article_id, tenant.tenant_id)
        await self._article_repo.delete(article)
        await self._track(
            tenant,
            "compliance.knowledge_article.deleted",
            "knowledge_article",
            article_id,
            "delete",
            {"slug": article.slug},
            correlation_id,
        )

    async def record_view(self, article_id: uuid.UUID, tenant: TenantContext) -> int:
        """Count one view and return the new total.

        Views are counters only; they are not written to the activity trail.
        """
        view_count = await self._article_repo.increment_view_count(article_id, tenant.tenant_id)
        if view_count is None:
            raise NotFoundError(resource="KnowledgeArticle", resource_id=str(article_id))
        logger.debug("Knowledge article viewed", article_id=str(article_id), view_count=view_count)
        return int(view_count)

    async def rate_article(
        self,
        article_id: uuid.UUID,
        tenant: TenantContext,
        rating: int,
        correlation_id: str | None = None,
    ) -> KnowledgeArticle:
        """Fold a 1-5 rating into the article's running mean.

        Raises:
            ValidationError: If the rating is outside 1-5.
            NotFoundError: If the article does not exist.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(message=f"Rating must be between {MIN_RATING} and {MAX_RATING}", field="rating")

        article = await self._article_repo.get_by_id(article_id, tenant.tenant_id)
        count = article.rating_count or 0
        current = article.rating or 0.0
        article.rating_count = count + 1
        article.rating = round((current * count + rating) / article.rating_count, 2)
        article = await self._article_repo.save(article)

        await self._track(
            tenant,
            "compliance.knowledge_article.rated",
            "knowledge_article",
            article.id,
            "rate",
            {"rating": rating, "average": article.rating, "count": article.rating_count},
            correlation_id,
        )
        return article

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------

    async def bookmark_article(
        self, article_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> KnowledgeBookmark:
        """Bookmark an article for the caller. Bookmarking twice returns the existing bookmark."""
        await self._article_repo.get_by_id(article_id, tenant.tenant_id)
        existing = await self._bookmark_repo.find(tenant.tenant_id, tenant.user_id, article_id)
        if existing is not None:
            return existing

        bookmark = await self._bookmark_repo.add(
            KnowledgeBookmark(tenant_id=tenant.tenant_id, article_id=article_id, user_id=tenant.user_id)
        )
        await self._track(
            tenant,
            "compliance.knowledge_article.bookmarked",
            "knowledge_article",
            article_id,
            "bookmark",
            {},
            correlation_id,
        )
        return bookmark

    async def remove_bookmark(
        self, article_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> bool:
        """Remove the caller's bookmark. Returns False when there was none."""
        bookmark = await self._bookmark_repo.find(tenant.tenant_id, tenant.user_id, article_id)
        if bookmark is None:
            return False
        await self._bookmark_repo.delete(bookmark)
        await self._track(
            tenant,
            "compliance.knowledge_article.unbookmarked",
            "knowledge_article",
            article_id,
            "unbookmark",
            {},
            correlation_id,
        )
        return True

    async def list_bookmarks(self, tenant: TenantContext) -> list[KnowledgeArticle]:
        return await self._bookmark_repo.bookmarked_articles(tenant.tenant_id, tenant.user_id)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def create_category(
        self,
        tenant: TenantContext,
        name: str,
        description: str | None = None,
        parent_id: uuid.UUID | None = None,
        framework_id: uuid.UUID | None = None,
        order_index: int = 0,
        correlation_id: str | None = None,
    ) -> KnowledgeCategory:
        """Create a category under an optional parent.

        Names are unique (case-insensitive) among siblings with the same framework.

        Raises:
            ValidationError: On a blank name.
            ConflictError: If a sibling already has the name.
            NotFoundError: If the parent or framework does not exist.
        """
        name = _require_text(name, "Category name is required", "name")
        await self._check_references(tenant, category_id=parent_id, framework_id=framework_id)
        if await self._category_repo.find_sibling(tenant.tenant_id, name, parent_id, framework_id) is not None:
            raise ConflictError(message=f"A category named '{name}' already exists at this level")

        category = await self._category_repo.add(
            KnowledgeCategory(
                tenant_id=tenant.tenant_id,
                name=name,
                description=description,
                parent_id=parent_id,
                framework_id=framework_id,
                order_index=order_index,
                is_active=True,
            )
        )
        await self._track(
            tenant,
            "compliance.knowledge_category.created",
            "knowledge_category",
            category.id,
            "create",
            {"name": name, "parent_id": str(parent_id) if parent_id else None},
            correlation_id,
        )
        return category

    async def list_categories(
        self,
        tenant: TenantContext,
        search: str | None = None,
        framework_id: uuid.UUID | None = None,
        parent_id: uuid.UUID | None = None,
    ) -> list[KnowledgeCategory]:
        """Active categories ordered by order_index, then name."""
        filters: list[Any] = [KnowledgeCategory.is_active.is_(True)]
        if search and search.strip():
            filters.append(category_text_match(search.strip()))
        if framework_id:
            filters.append(KnowledgeCategory.framework_id == framework_id)
        if parent_id:
            filters.append(KnowledgeCategory.parent_id == parent_id)
        return await self._category_repo.list_where(
            tenant.tenant_id,
            filters,
            order_by=[KnowledgeCategory.order_index.asc(), KnowledgeCategory.name.asc()],
        )

    async def get_category(self, category_id: uuid.UUID, tenant: TenantContext) -> KnowledgeCategory:
        return await self._category_repo.get_by_id(category_id, tenant.tenant_id)

    async def update_category(
        self,
        category_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> KnowledgeCategory:
        _check_unknown(changes, _CATEGORY_FIELDS)
        reject_nulls(changes, _CATEGORY_NON_NULLABLE)
        category = await self._category_repo.get_by_id(category_id, tenant.tenant_id)
        if "name" in changes:
            name = _require_text(changes["name"], "Category name is required", "name")
            sibling = await self._category_repo.find_sibling(
                tenant.tenant_id, name, category.parent_id, category.framework_id
            )
            if sibling is not None and sibling.id != category.id:
                raise ConflictError(message=f"A category named '{name}' already exists at this level")
            changes = {**changes, "name": name}

        for name, value in changes.items():
            setattr(category, name, value)
        category = await self._category_repo.save(category)
        await self._track(
            tenant,
            "compliance.knowledge_category.updated",
            "knowledge_category",
            category.id,
            "update",
            {"fields": sorted(changes)},
            correlation_id,
        )
        return category

    async def delete_category(
        self, category_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        """Delete a category. Child categories, articles and terms keep existing without it."""
        category = await self._category_repo.get_by_id(category_id, tenant.tenant_id)
        await self._category_repo.delete(category)
        await self._track(
            tenant,
            "compliance.knowledge_category.deleted",
            "knowledge_category",
            category_id,
            "delete",
            {"name": category.name},
            correlation_id,
        )

    # ------------------------------------------------------------------
    # Glossary terms
    # ------------------------------------------------------------------

    async def create_term(
        self,
        tenant: TenantContext,
        term: str,
        definition: str,
        short_definition: str | None = None,
        category_id: uuid.UUID | None = None,
        framework_id: uuid.UUID | None = None,
        synonyms: list[str] | None = None,
        acronyms: list[str] | None = None,
        examples: list[str] | None = None,
        correlation_id: str | None = None,
    ) -> KnowledgeTerm:
        """Define a glossary term. A term is unique per framework (or globally when no framework is given).

        Raises:
            ValidationError: On a blank term or definition.
            ConflictError: If the term is already defined for the framework.
        """
        term = _require_text(term, "Term is required", "term")
        definition = _require_text(definition, "Definition is required", "definition")
        await self._check_references(tenant, category_id=category_id, framework_id=framework_id)
        if await self._term_repo.find_term(tenant.tenant_id, term, framework_id) is not None:
            raise ConflictError(message=f"The term '{term}' is already defined for this framework")

        entry = await self._term_repo.add(
            KnowledgeTerm(
                tenant_id=tenant.tenant_id,
                term=term,
                definition=definition,
                short_definition=short_definition,
                category_id=category_id,
                framework_id=framework_id,
                synonyms=_clean_list(synonyms or []),
                acronyms=_clean_list(acronyms or []),
                examples=_clean_list(examples or []),
                view_count=0,
                is_active=True,
            )
        )
        await self._track(
            tenant,
            "compliance.knowledge_term.created",
            "knowledge_term",
            entry.id,
            "create",
            {"term": term},
            correlation_id,
        )
        return entry

    async def list_terms(
        self,
        tenant: TenantContext,
        search: str | None = None,
        framework_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        """Active terms, most viewed first, then alphabetical."""
        filters: list[Any] = [KnowledgeTerm.is_active.is_(True)]
        if search and search.strip():
            filters.append(term_text_match(search.strip()))
        if framework_id:
            filters.append(KnowledgeTerm.framework_id == framework_id)
        rows, total = await self._term_repo.list_page(
            tenant.tenant_id,
            filters,
            page,
            page_size,
            order_by=[KnowledgeTerm.view_count.desc(), KnowledgeTerm.term.asc()],
        )
        return to_page(rows, total, page, page_size)

    async def get_term(self, term_id: uuid.UUID, tenant: TenantContext) -> KnowledgeTerm:
        return await self._term_repo.get_by_id(term_id, tenant.tenant_id)

    async def update_term(
        self,
        term_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> KnowledgeTerm:
        _check_unknown(changes, _TERM_FIELDS)
        reject_nulls(changes, _TERM_NON_NULLABLE)
        entry = await self._term_repo.get_by_id(term_id, tenant.tenant_id)
        if "term" in changes:
            value = _require_text(changes["term"], "Term is required", "term")
            existing = await self._term_repo.find_term(tenant.tenant_id, value, entry.framework_id)
            if existing is not None and existing.id != entry.id:
                raise ConflictError(message=f"The term '{value}' is already defined for this framework")
            changes = {**changes, "term": value}
        if "definition" in changes:
            definition = _require_text(changes["definition"], "Definition is required", "definition")
            changes = {**changes, "definition": definition}
        for list_field in ("synonyms", "acronyms", "examples"):
            if list_field in changes:
                changes = {**changes, list_field: _clean_list(changes[list_field])}
        await self._check_references(tenant, category_id=changes.get("category_id"))

        for name, value in changes.items():
            setattr(entry, name, value)
        entry = await self._term_repo.save(entry)
        await self._track(
            tenant,
            "compliance.knowledge_term.updated",
            "knowledge_term",
            entry.id,
            "update",
            {"fields": sorted(changes)},
            correlation_id,
        )
        return entry

    async def delete_term(self, term_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None) -> None:
        entry = await self._term_repo.get_by_id(term_id, tenant.tenant_id)
        await self._term_repo.delete(entry)
        await self._track(
            tenant, "compliance.knowledge_term.deleted", "knowledge_term", term_id, "delete", {}, correlation_id
        )

    # ------------------------------------------------------------------
    # Search, contextual help and statistics
    # ------------------------------------------------------------------

    async def search(
        self,
        tenant: TenantContext,
        query: str,
        search_type: str = "all",
        framework_id: uuid.UUID | None = None,
        category_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> dict[str, Any]:
        """Search published articles, active terms and active categories.

        With search_type "all", up to five hits of each kind are returned,
        those whose title contains the query first. A single kind is paged.
        Queries shorter than two characters return nothing.

        Args:
            tenant: Caller context.
            query: Text to look for.
            search_type: "all", "articles", "terms" or "categories".
            framework_id: Restrict hits to one framework.
            category_id: Restrict article hits to one category.
            page: 1-indexed page, single-kind searches only.
            page_size: Page size, single-kind searches only.

        Returns:
            The standard page payload plus "query" and "type".

        Raises:
            ValidationError: On an unknown search_type.
        """
        if search_type not in SEARCH_TYPES:
            raise ValidationError(message=f"Unknown search type '{search_type}'", field="type")
        text = (query or "").strip()
        if len(text) < MIN_QUERY_LENGTH:
            return {**to_page([], 0, page, page_size), "query": text, "type": search_type}

        article_filters: list[Any] = [KnowledgeArticle.status == ArticleStatus.PUBLISHED, article_text_match(text)]
        term_filters: list[Any] = [KnowledgeTerm.is_active.is_(True), term_text_match(text)]
        category_filters: list[Any] = [KnowledgeCategory.is_active.is_(True), category_text_match(text)]
        if framework_id:
            article_filters.append(KnowledgeArticle.framework_id == framework_id)
            term_filters.append(KnowledgeTerm.framework_id == framework_id)
            category_filters.append(KnowledgeCategory.framework_id == framework_id)
        if category_id:
            article_filters.append(KnowledgeArticle.category_id == category_id)

        article_order = [KnowledgeArticle.view_count.desc(), KnowledgeArticle.published_at.desc().nulls_last()]
        term_order = [KnowledgeTerm.view_count.desc(), KnowledgeTerm.term.asc()]
        category_order = [KnowledgeCategory.name.asc()]

        if search_type == "articles":
            rows, total = await self._article_repo.list_page(
                tenant.tenant_id, article_filters, page, page_size, order_by=article_order
            )
            results = [_article_result(a) for a in rows]
        elif search_type == "terms":
            rows, total = await self._term_repo.list_page(
                tenant.tenant_id, term_filters, page, page_size, order_by=term_order
            )
            results = [_term_result(t) for t in rows]
        elif search_type == "categories":
            rows, total = await self._category_repo.list_page(
                tenant.tenant_id, category_filters, page, page_size, order_by=category_order
            )
            results = [_category_result(c) for c in rows]
        else:
            articles = await self._article_repo.list_where(
                tenant.tenant_id, article_filters, order_by=article_order, limit=MIXED_RESULTS_PER_TYPE
            )
            terms = await self._term_repo.list_where(
                tenant.tenant_id, term_filters, order_by=term_order, limit=MIXED_RESULTS_PER_TYPE
            )
            categories = await self._category_repo.list_where(
                tenant.tenant_id, category_filters, order_by=category_order, limit=MIXED_RESULTS_PER_TYPE
            )
            results = [
                *(_article_result(a) for a in articles),
                *(_term_result(t) for t in terms),
                *(_category_result(c) for c in categories),
            ]
            needle = text.lower()
            # sort() is stable, so each kind keeps its own order within a tier
            results.sort(key=lambda r: 0 if needle in r["title"].lower() else 1)
            total = len(results)

        logger.info(
            "Knowledge base searched",
            tenant_id=str(tenant.tenant_id),
            search_type=search_type,
            result_count=len(results),
        )
        return {**to_page(results, total, page, page_size), "query": text, "type": search_type}

    async def contextual_help(
        self,
        tenant: TenantContext,
        framework_id: uuid.UUID | None = None,
        control_id: uuid.UUID | None = None,
        term: str | None = None,
    ) -> dict[str, Any]:
        """Top published articles and active terms for a framework, control or phrase.

        Raises:
            ValidationError: If none of framework_id, control_id or term is given.
        """
        text = (term or "").strip()
        if framework_id is None and control_id is None and not text:
            raise ValidationError(message="Provide a framework, a control or a term", field="term")

        article_filters: list[Any] = [KnowledgeArticle.status == ArticleStatus.PUBLISHED]
        term_filters: list[Any] = [KnowledgeTerm.is_active.is_(True)]
        if framework_id:
            article_filters.append(KnowledgeArticle.framework_id == framework_id)
            term_filters.append(KnowledgeTerm.framework_id == framework_id)
        if control_id:
            article_filters.append(KnowledgeArticle.control_id == control_id)
        if text:
            article_filters.append(article_text_match(text))
            term_filters.append(term_text_match(text))

        articles = await self._article_repo.list_where(
            tenant.tenant_id,
            article_filters,
            order_by=[KnowledgeArticle.view_count.desc(), KnowledgeArticle.published_at.desc().nulls_last()],
            limit=CONTEXTUAL_HELP_LIMIT,
        )
        terms = await self._term_repo.list_where(
            tenant.tenant_id,
            term_filters,
            order_by=[KnowledgeTerm.view_count.desc(), KnowledgeTerm.term.asc()],
            limit=CONTEXTUAL_HELP_LIMIT,
        )
        return {
            "articles": [
                {"id": str(a.id), "title": a.title, "summary": a.summary or a.title, "slug": a.slug} for a in articles
            ],
            "terms": [{"id": str(t.id), "term": t.term, "definition": _short_definition(t, 150)} for t in terms],
        }

    async def stats(self, tenant: TenantContext) -> dict[str, Any]:
        by_status = await self._article_repo.count_by(tenant.tenant_id, KnowledgeArticle.status)
        by_content_type = await self._article_repo.count_by(tenant.tenant_id, KnowledgeArticle.content_type)
        total_views, average_rating = await self._article_repo.totals(tenant.tenant_id)
        return {
            "total_articles": sum(by_status.values()),
            "published_articles": by_status.get(ArticleStatus.PUBLISHED, 0),
            "draft_articles": by_status.get(ArticleStatus.DRAFT, 0),
            "by_status": by_status,
            "by_content_type": by_content_type,
            "total_terms": await self._term_repo.count(tenant.tenant_id, [KnowledgeTerm.is_active.is_(True)]),
            "total_categories": await self._category_repo.count(
                tenant.tenant_id, [KnowledgeCategory.is_active.is_(True)]
            ),
            "total_views": total_views,
            "average_rating": round(average_rating, 1),
            "total_bookmarks": await self._bookmark_repo.count(tenant.tenant_id),
        }
