"""Tests for vector search, the compliance assistant and the AI provider client."""

import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from complianceos.adapters.llm_client import COMPLIANCE_SYSTEM_PROMPT, AIClient
from complianceos.ai.service import AIAssistantService, answer_confidence, build_prompt
from complianceos.ai.vector_engine import VectorSearchEngine, VectorSearchResult, cosine_similarity
from complianceos.common.auth import TenantContext
from complianceos.common.errors import ExternalServiceError, NotFoundError, ValidationError
from complianceos.core.models import AIQueryStatus
from tests.conftest import make_fake_control, make_fake_evidence, make_repo


def make_ai_client(vectors: dict[str, list[float]] | None = None) -> AsyncMock:
    """AsyncMock AI client whose embed() looks vectors up by text prefix."""
    client = AsyncMock()
    client.embedding_model = "test-embedding"
    vectors = vectors or {}

    async def embed(text: str) -> list[float]:
        for prefix, vector in vectors.items():
            if text.startswith(prefix):
                return vector
        return [1.0, 0.0]

    client.embed.side_effect = embed
    client.complete.return_value = "Controls CC6.1 and CC6.2 cover access."
    return client


def make_candidate(source_type: str, embedding: list[float], content: str = "doc") -> MagicMock:
    candidate = MagicMock()
    candidate.source_type = source_type
    candidate.source_id = uuid.uuid4()
    candidate.content = content
    candidate.embedding = embedding
    candidate.meta = {"source_type": source_type}
    return candidate


def result(similarity: float) -> VectorSearchResult:
    return VectorSearchResult(source_type="CONTROL", source_id=uuid.uuid4(), content="c", similarity=similarity)


class TestCosineSimilarity:
    def test_identical_vectors(self) -> None:
        assert cosine_similarity([0.3, 0.4], [0.3, 0.4]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_length_mismatch(self) -> None:
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_zero_vector(self) -> None:
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_empty_vectors(self) -> None:
        assert cosine_similarity([], []) == 0.0


class TestVectorSearchEngine:
    def _engine(
        self,
        ai_client: AsyncMock,
        embedding_repo: AsyncMock | None = None,
        query_repo: AsyncMock | None = None,
        source_repos: dict[str, AsyncMock] | None = None,
    ) -> VectorSearchEngine:
        repos = source_repos or {t: make_repo() for t in ("EVIDENCE", "POLICY", "CONTROL", "RISK")}
        return VectorSearchEngine(embedding_repo or make_repo(), query_repo or make_repo(), repos, ai_client)

    @pytest.mark.asyncio()
    async def test_index_source_upserts_document(self, mock_tenant: TenantContext) -> None:
        control = make_fake_control(mock_tenant.tenant_id, code="CC6.1")
        control.description = "Logical access"
        control_repo = make_repo()
        control_repo.get_by_id.return_value = control
        embedding_repo = make_repo()
        engine = self._engine(
            make_ai_client(), embedding_repo=embedding_repo, source_repos={"CONTROL": control_repo}
        )

        indexed = await engine.index_source(mock_tenant, "CONTROL", control.id)

        assert indexed == str(control.id)
        kwargs = embedding_repo.upsert.call_args.kwargs
        assert kwargs["content"] == "Control CC6.1\n\nLogical access"
        assert kwargs["model"] == "test-embedding"
        assert kwargs["meta"]["source_type"] == "CONTROL"
        assert kwargs["meta"]["criticality"] == "MEDIUM"

    @pytest.mark.asyncio()
    async def test_index_unknown_source_type(self, mock_tenant: TenantContext) -> None:
        engine = self._engine(make_ai_client())

        with pytest.raises(ValidationError):
            await engine.index_source(mock_tenant, "WIDGET", uuid.uuid4())

    @pytest.mark.asyncio()
    async def test_batch_index_reports_failures_in_order(self, mock_tenant: TenantContext) -> None:
        control = make_fake_control(mock_tenant.tenant_id)
        evidence = make_fake_evidence(mock_tenant.tenant_id)
        evidence.title = "Broken upload"
        control_repo = make_repo()
        control_repo.find_by_id.return_value = control
        evidence_repo = make_repo()
        evidence_repo.find_by_id.return_value = evidence
        ai_client = make_ai_client()

        async def embed(text: str) -> list[float]:
            if text.startswith("Broken"):
                raise ExternalServiceError(service="ai-provider", message="Provider returned status 500")
            return [1.0, 0.0]

        ai_client.embed.side_effect = embed
        embedding_repo = make_repo()
        engine = self._engine(
            ai_client,
            embedding_repo=embedding_repo,
            source_repos={"CONTROL": control_repo, "EVIDENCE": evidence_repo},
        )
        missing_id = uuid.uuid4()

        results = await engine.batch_index(
            mock_tenant, [("CONTROL", control.id), ("EVIDENCE", evidence.id), ("WIDGET", missing_id)]
        )

        assert results == [str(control.id), "", ""]
        assert embedding_repo.upsert.await_count == 1

    @pytest.mark.asyncio()
    async def test_batch_index_chunks_embedding_calls(self, mock_tenant: TenantContext) -> None:
        control_repo = make_repo()
        control_repo.find_by_id.side_effect = lambda cid, tid: make_fake_control(tid)
        ai_client = make_ai_client()
        engine = self._engine(ai_client, source_repos={"CONTROL": control_repo})

        results = await engine.batch_index(mock_tenant, [("CONTROL", uuid.uuid4()) for _ in range(23)])

        assert len(results) == 23
        assert all(results)
        assert ai_client.embed.await_count == 23

    @pytest.mark.asyncio()
    async def test_search_filters_and_ranks(self, mock_tenant: TenantContext) -> None:
        embedding_repo = make_repo()
        close = make_candidate("POLICY", [0.9, 0.1], "Access policy")
        exact = make_candidate("CONTROL", [1.0, 0.0], "CC6.1")
        far = make_candidate("RISK", [0.0, 1.0], "Flood")
        embedding_repo.list_candidates.return_value = [close, far, exact]
        engine = self._engine(make_ai_client({"access": [1.0, 0.0]}), embedding_repo=embedding_repo)

        results = await engine.search(mock_tenant, "access reviews")

        assert [r.content for r in results] == ["CC6.1", "Access policy"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].metadata == {"source_type": "POLICY"}

    @pytest.mark.asyncio()
    async def test_search_limit(self, mock_tenant: TenantContext) -> None:
        embedding_repo = make_repo()
        embedding_repo.list_candidates.return_value = [make_candidate("CONTROL", [1.0, 0.0]) for _ in range(4)]
        engine = self._engine(make_ai_client(), embedding_repo=embedding_repo)

        assert len(await engine.search(mock_tenant, "anything", limit=2)) == 2

    @pytest.mark.asyncio()
    async def test_search_validates_inputs(self, mock_tenant: TenantContext) -> None:
        engine = self._engine(make_ai_client())

        with pytest.raises(ValidationError):
            await engine.search(mock_tenant, "   ")
        with pytest.raises(ValidationError):
            await engine.search(mock_tenant, "access", source_types=["WIDGET"])

    @pytest.mark.asyncio()
    async def test_recommendations_without_history(self, mock_tenant: TenantContext) -> None:
        ai_client = make_ai_client()
        engine = self._engine(ai_client)

        assert await engine.recommendations(mock_tenant) == []
        ai_client.embed.assert_not_called()

    @pytest.mark.asyncio()
    async def test_recommendations_use_recent_queries(self, mock_tenant: TenantContext) -> None:
        query_repo = make_repo()
        query_repo.list_where.return_value = [MagicMock(query_text="access"), MagicMock(query_text="mfa")]
        embedding_repo = make_repo()
        embedding_repo.list_candidates.return_value = [make_candidate("CONTROL", [0.7, 0.3])]
        ai_client = make_ai_client()
        engine = self._engine(ai_client, embedding_repo=embedding_repo, query_repo=query_repo)

        results = await engine.recommendations(mock_tenant)

        ai_client.embed.assert_awaited_once_with("access mfa")
        # cos([1,0],[0.7,0.3]) ~ 0.919, above the 0.6 recommendation floor
        assert len(results) == 1

    @pytest.mark.asyncio()
    async def test_cleanup_orphans(self, mock_tenant: TenantContext) -> None:
        kept = make_candidate("CONTROL", [1.0])
        orphan = make_candidate("CONTROL", [1.0])
        unknown = make_candidate("LEGACY", [1.0])
        embedding_repo = make_repo()
        embedding_repo.list_candidates.return_value = [kept, orphan, unknown]
        embedding_repo.delete_many.return_value = 2
        control_repo = make_repo()
        control_repo.existing_ids.return_value = {kept.source_id}
        engine = self._engine(make_ai_client(), embedding_repo=embedding_repo, source_repos={"CONTROL": control_repo})

        deleted = await engine.cleanup_orphans(mock_tenant)

        assert deleted == 2
        assert embedding_repo.delete_many.call_args.args[0] == [orphan, unknown]


class TestAnswerConfidence:
    def test_no_sources(self) -> None:
        assert answer_confidence([]) == 0.0

    def test_boosted_average(self) -> None:
        assert answer_confidence([result(0.7), result(0.8)]) == pytest.approx(0.9)

    def test_capped_at_one(self) -> None:
        assert answer_confidence([result(0.95), result(0.9)]) == 1.0

    def test_prompt_lists_sources(self) -> None:
        prompt = build_prompt("Who reviews access?", [result(0.8)])
        assert prompt == "Context:\nCONTROL: c\n\nQuery: Who reviews access?"


class AssistantHarness:
    def __init__(self, tenant: TenantContext, activity, publisher: AsyncMock) -> None:
        self.session = MagicMock()
        self.session.id = uuid.uuid4()
        self.session.user_id = tenant.user_id
        self.session.is_active = True
        self.session.query_count = 0
        self.session.context = {}
        self.session_repo = make_repo()
        self.session_repo.get_by_id.return_value = self.session
        self.query_repo = make_repo()
        self.feedback_repo = make_repo()
        self.vector_engine = AsyncMock()
        self.vector_engine.search.return_value = [result(0.75), result(0.85)]
        self.ai_client = make_ai_client()
        self.service = AIAssistantService(
            self.session_repo,
            self.query_repo,
            self.feedback_repo,
            self.vector_engine,
            self.ai_client,
            activity,
            publisher,
        )


@pytest.fixture()
def assistant(mock_tenant: TenantContext, activity_service, mock_event_publisher: AsyncMock) -> AssistantHarness:
    return AssistantHarness(mock_tenant, activity_service, mock_event_publisher)


class TestAIAssistantService:
    @pytest.mark.asyncio()
    async def test_ask_completes_query(self, assistant: AssistantHarness, mock_tenant: TenantContext) -> None:
        query = await assistant.service.ask(assistant.session.id, mock_tenant, "  Who reviews access?  ")

        assert query.status == AIQueryStatus.COMPLETED
        assert query.query_text == "Who reviews access?"
        assert query.response_text == "Controls CC6.1 and CC6.2 cover access."
        assert query.confidence == pytest.approx(0.96)
        assert len(query.sources) == 2
        assert query.response_time_ms >= 0
        assert assistant.session.query_count == 1
        assert assistant.session.context["last_query"] == "Who reviews access?"
        messages = assistant.ai_client.complete.call_args.args[0]
        assert messages[0]["role"] == "user"
        assert "Query: Who reviews access?" in messages[0]["content"]

    @pytest.mark.asyncio()
    async def test_failed_provider_call_is_recorded(
        self, assistant: AssistantHarness, mock_tenant: TenantContext
    ) -> None:
        assistant.ai_client.complete.side_effect = ExternalServiceError(
            service="ai-provider", message="Request timed out"
        )

        with pytest.raises(ExternalServiceError):
            await assistant.service.ask(assistant.session.id, mock_tenant, "Who reviews access?")

        failed = assistant.query_repo.commit_failure.call_args.args[0]
        assert failed.status == AIQueryStatus.FAILED
        assert "Request timed out" in failed.error_message
        assert assistant.session.query_count == 0

    @pytest.mark.asyncio()
    async def test_closed_session_rejects_questions(
        self, assistant: AssistantHarness, mock_tenant: TenantContext
    ) -> None:
        assistant.session.is_active = False

        with pytest.raises(ValidationError):
            await assistant.service.ask(assistant.session.id, mock_tenant, "Anything?")
        assistant.query_repo.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_other_users_session_is_hidden(
        self, assistant: AssistantHarness, mock_tenant: TenantContext
    ) -> None:
        assistant.session.user_id = uuid.uuid4()

        with pytest.raises(NotFoundError):
            await assistant.service.get_session(assistant.session.id, mock_tenant)

    @pytest.mark.asyncio()
    async def test_create_and_close_session(self, assistant: AssistantHarness, mock_tenant: TenantContext) -> None:
        created = await assistant.service.create_session(mock_tenant, title="SOC 2 prep")
        assert created.is_active is True
        assert created.query_count == 0

        closed = await assistant.service.close_session(assistant.session.id, mock_tenant)
        assert closed.is_active is False

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(("feedback_type", "rating"), [("LOVE_IT", None), ("HELPFUL", 6)])
    async def test_feedback_validation(
        self, assistant: AssistantHarness, mock_tenant: TenantContext, feedback_type: str, rating: int | None
    ) -> None:
        with pytest.raises(ValidationError):
            await assistant.service.submit_feedback(uuid.uuid4(), mock_tenant, feedback_type, rating)

    @pytest.mark.asyncio()
    async def test_feedback_recorded(self, assistant: AssistantHarness, mock_tenant: TenantContext) -> None:
        query = MagicMock(id=uuid.uuid4())
        assistant.query_repo.get_by_id.return_value = query

        feedback = await assistant.service.submit_feedback(query.id, mock_tenant, "HELPFUL", rating=5)

        assert feedback.query_id == query.id
        assert feedback.rating == 5

    @pytest.mark.asyncio()
    async def test_analytics(self, assistant: AssistantHarness, mock_tenant: TenantContext) -> None:
        assistant.query_repo.count.return_value = 3
        assistant.query_repo.averages.return_value = (1234.567, 0.81234)
        assistant.feedback_repo.count_by.return_value = {"HELPFUL": 2}
        assistant.query_repo.top_queries.return_value = [("who reviews access?", 2)]

        analytics = await assistant.service.analytics(mock_tenant)

        assert analytics == {
            "total_queries": 3,
            "average_response_time_ms": 1234.57,
            "average_confidence": 0.8123,
            "feedback_by_type": {"HELPFUL": 2},
            "top_queries": [{"query": "who reviews access?", "count": 2}],
        }


class TestAIClient:
    def _client(self, handler) -> AIClient:
        return AIClient(
            base_url="https://ai.example.com/v1/",
            api_key="sk-test",
            embedding_model="embed-small",
            chat_model="chat-large",
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio()
    async def test_embed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        vector = await self._client(handler).embed("access review")

        assert vector == [0.1, 0.2, 0.3]
        assert str(seen[0].url) == "https://ai.example.com/v1/embeddings"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        assert json.loads(seen[0].content) == {"model": "embed-small", "input": "access review"}

    @pytest.mark.asyncio()
    async def test_complete_prepends_system_prompt(self) -> None:
        payloads: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            payloads.append(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"content": "Yes."}}]})

        reply = await self._client(handler).complete([{"role": "user", "content": "Is MFA required?"}])

        assert reply == "Yes."
        assert payloads[0]["model"] == "chat-large"
        assert payloads[0]["messages"][0] == {"role": "system", "content": COMPLIANCE_SYSTEM_PROMPT}
        assert payloads[0]["messages"][1]["content"] == "Is MFA required?"

    @pytest.mark.asyncio()
    async def test_empty_completion(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})

        assert await self._client(handler).complete([]) == "No response generated"

    @pytest.mark.asyncio()
    async def test_error_status_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "rate limited"})

        with pytest.raises(ExternalServiceError) as exc_info:
            await self._client(handler).embed("x")
        assert "429" in exc_info.value.message

    @pytest.mark.asyncio()
    async def test_malformed_body_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": []})

        with pytest.raises(ExternalServiceError):
            await self._client(handler).embed("x")

    @pytest.mark.asyncio()
    async def test_transport_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalServiceError):
            await self._client(handler).complete([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio()
    async def test_timeout_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ExternalServiceError) as exc_info:
            await self._client(handler).embed("x")
        assert "timed out" in exc_info.value.message
