"""Tests for knowledge base articles, categories, glossary terms, search and bookmarks."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from complianceos.common.auth import TenantContext
from complianceos.common.errors import ConflictError, NotFoundError, ValidationError
from complianceos.core.models import ArticleStatus, KnowledgeArticleVersion
from complianceos.core.services import ActivityService
from complianceos.knowledge.service import KnowledgeService, article_text_match, slugify, term_text_match
from tests.conftest import event_types, make_repo


class KnowledgeHarness:
    def __init__(self, activity: ActivityService, publisher: AsyncMock) -> None:
        self.article_repo = make_repo()
        self.article_repo.find_by_slug.return_value = None
        self.article_repo.totals.return_value = (0, 0.0)
        self.category_repo = make_repo()
        self.category_repo.find_sibling.return_value = None
        self.term_repo = make_repo()
        self.term_repo.find_term.return_value = None
        self.bookmark_repo = make_repo()
        self.bookmark_repo.find.return_value = None
        self.framework_repo = make_repo()
        self.control_repo = make_repo()
        self.publisher = publisher
        self.service = KnowledgeService(
            article_repo=self.article_repo,
            category_repo=self.category_repo,
            term_repo=self.term_repo,
            bookmark_repo=self.bookmark_repo,
            framework_repo=self.framework_repo,
            control_repo=self.control_repo,
            activity=activity,
            event_publisher=publisher,
        )


@pytest.fixture()
def kb(activity_service: ActivityService, mock_event_publisher: AsyncMock) -> KnowledgeHarness:
    return KnowledgeHarness(activity_service, mock_event_publisher)


def make_fake_article(
    title: str = "Access reviews",
    status: str = ArticleStatus.DRAFT,
    rating: float | None = None,
    rating_count: int = 0,
) -> MagicMock:
    article = MagicMock()
    article.id = uuid.uuid4()
    article.title = title
    article.slug = slugify(title)
    article.summary = "How to run quarterly access reviews"
    article.content = "Export the user list, then..."
    article.content_type = "GUIDE"
    article.status = status
    article.category_id = None
    article.framework_id = None
    article.control_id = None
    article.tags = ["access"]
    article.version = 1
    article.view_count = 3
    article.rating = rating
    article.rating_count = rating_count
    article.published_at = None
    return article


def make_fake_term(term: str = "MFA", definition: str = "Multi-factor authentication") -> MagicMock:
    entry = MagicMock()
    entry.id = uuid.uuid4()
    entry.term = term
    entry.definition = definition
    entry.short_definition = None
    entry.synonyms = []
    entry.acronyms = []
    entry.framework_id = None
    entry.view_count = 0
    return entry


def make_fake_category(name: str = "Identity") -> MagicMock:
    category = MagicMock()
    category.id = uuid.uuid4()
    category.name = name
    category.description = "Identity and access"
    category.parent_id = None
    category.framework_id = None
    return category


def _sql(clause: object) -> str:
    dialect = postgresql.dialect()
    return str(clause.compile(dialect=dialect, compile_kwargs={"literal_binds": True}))  # type: ignore[attr-defined]


@pytest.mark.parametrize(
    ("title", "slug"),
    [
        ("Access Reviews", "access-reviews"),
        ("  SOC 2: Type II / CC6.1  ", "soc-2-type-ii-cc6-1"),
        ("--Already--slugged--", "already-slugged"),
    ],
)
def test_slugify(title: str, slug: str) -> None:
    assert slugify(title) == slug


class TestArticles:
    @pytest.mark.asyncio()
    async def test_create_starts_as_draft(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        article = await kb.service.create_article(
            admin_tenant, "Access Reviews", "Quarterly process", tags=["access", " access ", ""]
        )

        assert article.status == ArticleStatus.DRAFT
        assert article.slug == "access-reviews"
        assert article.version == 1
        assert article.tags == ["access"]
        assert article.author_id == admin_tenant.user_id
        assert event_types(kb.publisher) == ["compliance.knowledge_article.created"]

    @pytest.mark.asyncio()
    async def test_duplicate_slug_conflicts(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        kb.article_repo.find_by_slug.return_value = make_fake_article()

        with pytest.raises(ConflictError):
            await kb.service.create_article(admin_tenant, "Access reviews!", "Quarterly process")
        kb.article_repo.add.assert_not_called()

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("title", "content", "content_type", "field"),
        [
            ("  ", "Body", "ARTICLE", "title"),
            ("Title", "   ", "ARTICLE", "content"),
            ("Title", "Body", "PODCAST", "content_type"),
            ("!!!", "Body", "ARTICLE", "title"),
        ],
    )
    async def test_create_validation(
        self,
        kb: KnowledgeHarness,
        admin_tenant: TenantContext,
        title: str,
        content: str,
        content_type: str,
        field: str,
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await kb.service.create_article(admin_tenant, title, content, content_type=content_type)
        assert exc_info.value.field == field
        kb.article_repo.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_unknown_framework_reference(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        kb.framework_repo.get_by_id.side_effect = NotFoundError("Framework", "x")

        with pytest.raises(NotFoundError):
            await kb.service.create_article(admin_tenant, "Title", "Body", framework_id=uuid.uuid4())
        kb.article_repo.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_content_edit_snapshots_previous_version(
        self, kb: KnowledgeHarness, admin_tenant: TenantContext
    ) -> None:
        article = make_fake_article()
        kb.article_repo.get_by_id.return_value = article

        updated = await kb.service.update_article(
            article.id, admin_tenant, {"content": "New process"}, change_log="Rewrote steps"
        )

        [snapshot] = [c.args[0] for c in kb.article_repo.add_version.await_args_list]
        assert isinstance(snapshot, KnowledgeArticleVersion)
        assert snapshot.version == 1
        assert snapshot.content == "Export the user list, then..."
        assert snapshot.change_log == "Rewrote steps"
        assert updated.version == 2
        assert updated.content == "New process"
        assert updated.slug == "access-reviews"

    @pytest.mark.asyncio()
    async def test_status_change_does_not_create_version(
        self, kb: KnowledgeHarness, admin_tenant: TenantContext
    ) -> None:
        article = make_fake_article()
        kb.article_repo.get_by_id.return_value = article

        updated = await kb.service.update_article(article.id, admin_tenant, {"status": ArticleStatus.PUBLISHED})

        kb.article_repo.add_version.assert_not_called()
        assert updated.version == 1
        assert updated.published_at is not None

    @pytest.mark.asyncio()
    async def test_republishing_keeps_first_publication_date(
        self, kb: KnowledgeHarness, admin_tenant: TenantContext
    ) -> None:
        first = datetime(2024, 3, 1, tzinfo=UTC)
        article = make_fake_article(status=ArticleStatus.ARCHIVED)
        article.published_at = first
        kb.article_repo.get_by_id.return_value = article

        updated = await kb.service.update_article(article.id, admin_tenant, {"status": ArticleStatus.PUBLISHED})

        assert updated.published_at == first

    @pytest.mark.asyncio()
    async def test_retitle_with_taken_slug_gets_suffix(
        self, kb: KnowledgeHarness, admin_tenant: TenantContext
    ) -> None:
        article = make_fake_article()
        kb.article_repo.get_by_id.return_value = article
        kb.article_repo.find_by_slug.return_value = make_fake_article("Password policy")

        updated = await kb.service.update_article(article.id, admin_tenant, {"title": "Password Policy"})

        assert updated.slug == f"password-policy-{article.id.hex[:8]}"
        assert kb.article_repo.find_by_slug.await_args.kwargs == {"exclude_id": article.id}

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("changes", "field"),
        [
            ({"title": None}, "title"),
            ({"content": None}, "content"),
            ({"status": None}, "status"),
            ({"tags": None}, "tags"),
            ({"title": "   "}, "title"),
            ({"status": "LIVE"}, "status"),
            ({"slug": "custom"}, "slug"),
        ],
    )
    async def test_update_rejects_invalid_changes(
        self,
        kb: KnowledgeHarness,
        admin_tenant: TenantContext,
        changes: dict[str, object],
        field: str,
    ) -> None:
        article = make_fake_article()
        kb.article_repo.get_by_id.return_value = article

        with pytest.raises(ValidationError) as exc_info:
            await kb.service.update_article(article.id, admin_tenant, changes)

        assert exc_info.value.field == field
        kb.article_repo.save.assert_not_called()
        kb.article_repo.add_version.assert_not_called()

    @pytest.mark.asyncio()
    async def test_delete(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        article = make_fake_article()
        kb.article_repo.get_by_id.return_value = article

        await kb.service.delete_article(article.id, admin_tenant)

        kb.article_repo.delete.assert_awaited_once_with(article)
        assert event_types(kb.publisher) == ["compliance.knowledge_article.deleted"]


class TestViewsAndRatings:
    @pytest.mark.asyncio()
    async def test_view_returns_new_count(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        kb.article_repo.increment_view_count.return_value = 4
        article_id = uuid.uuid4()

        assert await kb.service.record_view(article_id, mock_tenant) == 4
        kb.article_repo.increment_view_count.assert_awaited_once_with(article_id, mock_tenant.tenant_id)
        kb.publisher.publish_event.assert_not_called()

    @pytest.mark.asyncio()
    async def test_view_of_missing_article(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        kb.article_repo.increment_view_count.return_value = None

        with pytest.raises(NotFoundError):
            await kb.service.record_view(uuid.uuid4(), mock_tenant)

    @pytest.mark.asyncio()
    async def test_first_rating(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        article = make_fake_article()
        kb.article_repo.get_by_id.return_value = article

        rated = await kb.service.rate_article(article.id, mock_tenant, 4)

        assert (rated.rating, rated.rating_count) == (4.0, 1)

    @pytest.mark.asyncio()
    async def test_rating_is_a_running_mean(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        article = make_fake_article(rating=4.0, rating_count=2)
        kb.article_repo.get_by_id.return_value = article

        rated = await kb.service.rate_article(article.id, mock_tenant, 1)

        assert (rated.rating, rated.rating_count) == (3.0, 3)
        assert event_types(kb.publisher) == ["compliance.knowledge_article.rated"]

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("rating", [0, 6, -1, True])
    async def test_rating_out_of_range(self, kb: KnowledgeHarness, mock_tenant: TenantContext, rating: int) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await kb.service.rate_article(uuid.uuid4(), mock_tenant, rating)
        assert exc_info.value.field == "rating"
        kb.article_repo.save.assert_not_called()


class TestBookmarks:
    @pytest.mark.asyncio()
    async def test_bookmark_is_per_user(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        article_id = uuid.uuid4()

        bookmark = await kb.service.bookmark_article(article_id, mock_tenant)

        assert (bookmark.user_id, bookmark.article_id) == (mock_tenant.user_id, article_id)
        kb.bookmark_repo.find.assert_awaited_once_with(mock_tenant.tenant_id, mock_tenant.user_id, article_id)

    @pytest.mark.asyncio()
    async def test_bookmarking_twice_keeps_one(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        existing = MagicMock()
        kb.bookmark_repo.find.return_value = existing

        assert await kb.service.bookmark_article(uuid.uuid4(), mock_tenant) is existing
        kb.bookmark_repo.add.assert_not_called()
        kb.publisher.publish_event.assert_not_called()

    @pytest.mark.asyncio()
    async def test_remove_missing_bookmark(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        assert await kb.service.remove_bookmark(uuid.uuid4(), mock_tenant) is False
        kb.bookmark_repo.delete.assert_not_called()


class TestCategoriesAndTerms:
    @pytest.mark.asyncio()
    async def test_sibling_name_conflict(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        kb.category_repo.find_sibling.return_value = make_fake_category()
        parent_id = uuid.uuid4()

        with pytest.raises(ConflictError):
            await kb.service.create_category(admin_tenant, "identity", parent_id=parent_id)

        kb.category_repo.find_sibling.assert_awaited_once_with(admin_tenant.tenant_id, "identity", parent_id, None)
        kb.category_repo.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_missing_parent(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        kb.category_repo.get_by_id.side_effect = NotFoundError("KnowledgeCategory", "x")

        with pytest.raises(NotFoundError):
            await kb.service.create_category(admin_tenant, "Identity", parent_id=uuid.uuid4())

    @pytest.mark.asyncio()
    async def test_category_name_cannot_be_cleared(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await kb.service.update_category(uuid.uuid4(), admin_tenant, {"name": None})
        assert exc_info.value.field == "name"

    @pytest.mark.asyncio()
    async def test_create_term(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        entry = await kb.service.create_term(
            admin_tenant, "Multi-factor authentication", "Two or more factors", acronyms=["MFA", "MFA", " 2FA "]
        )

        assert entry.acronyms == ["MFA", "2FA"]
        assert entry.is_active is True
        assert event_types(kb.publisher) == ["compliance.knowledge_term.created"]

    @pytest.mark.asyncio()
    async def test_duplicate_term_for_framework(self, kb: KnowledgeHarness, admin_tenant: TenantContext) -> None:
        kb.term_repo.find_term.return_value = make_fake_term()
        framework_id = uuid.uuid4()

        with pytest.raises(ConflictError):
            await kb.service.create_term(admin_tenant, "mfa", "Two factors", framework_id=framework_id)
        kb.term_repo.find_term.assert_awaited_once_with(admin_tenant.tenant_id, "mfa", framework_id)

    @pytest.mark.asyncio()
    async def test_renaming_term_onto_another_conflicts(
        self, kb: KnowledgeHarness, admin_tenant: TenantContext
    ) -> None:
        entry = make_fake_term("SSO")
        kb.term_repo.get_by_id.return_value = entry
        kb.term_repo.find_term.return_value = make_fake_term("MFA")

        with pytest.raises(ConflictError):
            await kb.service.update_term(entry.id, admin_tenant, {"term": "MFA"})
        kb.term_repo.save.assert_not_called()


class TestSearch:
    @pytest.mark.asyncio()
    async def test_short_query_returns_nothing(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        result = await kb.service.search(mock_tenant, " a ")

        assert result["items"] == []
        assert result["total"] == 0
        kb.article_repo.list_where.assert_not_called()

    @pytest.mark.asyncio()
    async def test_unknown_type(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await kb.service.search(mock_tenant, "access", search_type="videos")
        assert exc_info.value.field == "type"

    @pytest.mark.asyncio()
    async def test_mixed_search_ranks_title_matches_first(
        self, kb: KnowledgeHarness, mock_tenant: TenantContext
    ) -> None:
        kb.article_repo.list_where.return_value = [make_fake_article("Quarterly reviews")]
        kb.term_repo.list_where.return_value = [make_fake_term("Access control", "Limits who can do what")]
        kb.category_repo.list_where.return_value = [make_fake_category("Access")]

        result = await kb.service.search(mock_tenant, "Access")

        assert [(r["type"], r["title"]) for r in result["items"]] == [
            ("term", "Access control"),
            ("category", "Access"),
            ("article", "Quarterly reviews"),
        ]
        assert result["total"] == 3
        for repo in (kb.article_repo, kb.term_repo, kb.category_repo):
            assert repo.list_where.await_args.kwargs["limit"] == 5

    @pytest.mark.asyncio()
    async def test_article_search_only_sees_published(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        kb.article_repo.list_page.return_value = ([make_fake_article(status=ArticleStatus.PUBLISHED)], 7)

        result = await kb.service.search(mock_tenant, "access", search_type="articles", page=2, page_size=1)

        filters = kb.article_repo.list_page.await_args.args[1]
        assert "cos_knowledge_articles.status = 'PUBLISHED'" in _sql(filters[0])
        assert (result["total"], result["pages"], result["page"]) == (7, 7, 2)
        kb.term_repo.list_page.assert_not_called()

    def test_text_matchers_cover_tags_and_synonyms(self) -> None:
        article_sql = _sql(article_text_match("MFA"))
        term_sql = _sql(term_text_match("MFA"))

        assert "lower(CAST(cos_knowledge_articles.tags AS TEXT)) LIKE '%" in article_sql
        assert "cos_knowledge_articles.content ILIKE '%" in article_sql
        assert "lower(CAST(cos_knowledge_terms.synonyms AS TEXT)) LIKE '%" in term_sql
        assert "lower(CAST(cos_knowledge_terms.acronyms AS TEXT)) LIKE '%" in term_sql
        assert "mfa%" in article_sql
        assert "MFA" not in term_sql

    @pytest.mark.asyncio()
    async def test_contextual_help_needs_a_subject(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await kb.service.contextual_help(mock_tenant, term="  ")

    @pytest.mark.asyncio()
    async def test_contextual_help_truncates_long_definitions(
        self, kb: KnowledgeHarness, mock_tenant: TenantContext
    ) -> None:
        kb.term_repo.list_where.return_value = [make_fake_term("Risk appetite", "x" * 200)]

        result = await kb.service.contextual_help(mock_tenant, framework_id=uuid.uuid4())

        [term] = result["terms"]
        assert term["definition"] == "x" * 150 + "..."
        assert result["articles"] == []


class TestStats:
    @pytest.mark.asyncio()
    async def test_stats(self, kb: KnowledgeHarness, mock_tenant: TenantContext) -> None:
        kb.article_repo.count_by.side_effect = [{"PUBLISHED": 3, "DRAFT": 2, "ARCHIVED": 1}, {"GUIDE": 6}]
        kb.article_repo.totals.return_value = (120, 4.26)
        kb.term_repo.count.return_value = 9
        kb.category_repo.count.return_value = 4
        kb.bookmark_repo.count.return_value = 2

        stats = await kb.service.stats(mock_tenant)

        assert stats["total_articles"] == 6
        assert stats["published_articles"] == 3
        assert stats["draft_articles"] == 2
        assert stats["by_content_type"] == {"GUIDE": 6}
        assert stats["total_views"] == 120
        assert stats["average_rating"] == 4.3
        assert (stats["total_terms"], stats["total_categories"], stats["total_bookmarks"]) == (9, 4, 2)
