"""Embedding index and similarity search over compliance artifacts.

Evidence, policies, controls and risks are embedded as `title\\n\\ndescription`
and stored one row per (tenant, source_type, source_id); re-indexing a source
overwrites its row. Search embeds the query and ranks the tenant's stored
vectors by cosine similarity.
"""

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from complianceos.common.auth import TenantContext
from complianceos.common.errors import ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IAIClient
from complianceos.core.models import AIEmbedding, AIQuery, AIQueryStatus, EmbeddingSourceType

logger = get_logger(__name__)

BATCH_SIZE = 10
DEFAULT_MIN_SIMILARITY = 0.7
RECOMMENDATION_MIN_SIMILARITY = 0.6
RECOMMENDATION_LIMIT = 5
RECENT_QUERY_WINDOW = 5


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 on a length mismatch or a zero vector."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


@dataclass(frozen=True)
class VectorSearchResult:
    source_type: str
    source_id: uuid.UUID
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _IndexDocument:
    source_type: str
    source_id: uuid.UUID
    content: str
    metadata: dict[str, Any]


def _document_for(source_type: str, source: Any) -> _IndexDocument:
    """Build the text and metadata indexed for one source row."""
    if source_type == EmbeddingSourceType.CONTROL:
        title = source.name
        metadata = {
            "name": source.name,
            "category": source.category,
            "status": source.status,
            "criticality": source.criticality,
        }
    elif source_type == EmbeddingSourceType.EVIDENCE:
        title = source.title
        metadata = {"title": source.title, "type": source.evidence_type, "status": source.status}
    elif source_type == EmbeddingSourceType.POLICY:
        title = source.title
        metadata = {
            "title": source.title,
            "category": source.category,
            "status": source.status,
            "version": source.version,
        }
    else:
        title = source.title
        metadata = {
            "title": source.title,
            "category": source.category,
            "subcategory": source.subcategory,
            "status": source.status,
            "severity": source.severity,
        }
    return _IndexDocument(
        source_type=source_type,
        source_id=source.id,
        content=f"{title}\n\n{source.description or ''}",
        metadata={"source_type": source_type, **metadata},
    )


class VectorSearchEngine:
    """Indexes compliance artifacts and answers similarity queries.

    Args:
        embedding_repo: EmbeddingRepository.
        query_repo: AIQueryRepository (recent queries for recommendations).
        source_repos: Repository per EmbeddingSourceType, used to load and
            verify indexed sources.
        ai_client: Embedding provider.
    """

    def __init__(
        self,
        embedding_repo: Any,
        query_repo: Any,
        source_repos: dict[str, Any],
        ai_client: IAIClient,
    ) -> None:
        self._embedding_repo = embedding_repo
        self._query_repo = query_repo
        self._source_repos = source_repos
        self._ai_client = ai_client

    def _repo_for(self, source_type: str) -> Any:
        if source_type not in EmbeddingSourceType.__members__:
            raise ValidationError(message=f"Unknown source type '{source_type}'", field="source_type")
        return self._source_repos[source_type]

    async def _store(self, tenant: TenantContext, document: _IndexDocument, vector: list[float]) -> None:
        await self._embedding_repo.upsert(
            tenant_id=tenant.tenant_id,
            source_type=document.source_type,
            source_id=document.source_id,
            content=document.content,
            embedding=vector,
            model=self._ai_client.embedding_model,
            meta=document.metadata,
        )

    async def index_source(self, tenant: TenantContext, source_type: str, source_id: uuid.UUID) -> str:
        """Embed one source and upsert its vector.

        Returns:
            The indexed source id as a string.

        Raises:
            ValidationError: On an unknown source type.
            NotFoundError: If the source does not exist in the tenant.
            ExternalServiceError: If the embedding call fails.
        """
        source = await self._repo_for(source_type).get_by_id(source_id, tenant.tenant_id)
        document = _document_for(source_type, source)
        vector = await self._ai_client.embed(document.content)
        await self._store(tenant, document, vector)
        logger.info(
            "Source indexed", source_type=source_type, source_id=str(source_id), tenant_id=str(tenant.tenant_id)
        )
        return str(source_id)

    async def batch_index(self, tenant: TenantContext, items: Sequence[tuple[str, uuid.UUID]]) -> list[str]:
        """Index many sources, ten embedding calls at a time.

        Sources are loaded and stored one by one on the request session; only
        the embedding calls run concurrently. A failed item yields "" in the
        result, in input order, and is logged.

        Args:
            tenant: Caller context.
            items: (source_type, source_id) pairs.

        Returns:
            One entry per item: the source id, or "" when that item failed.
        """
        results: list[str] = []
        for start in range(0, len(items), BATCH_SIZE):
            batch = items[start : start + BATCH_SIZE]
            documents: list[_IndexDocument | None] = []
            for source_type, source_id in batch:
                repo = self._source_repos.get(source_type)
                source = await repo.find_by_id(source_id, tenant.tenant_id) if repo is not None else None
                documents.append(_document_for(source_type, source) if source is not None else None)

            embedded = await asyncio.gather(
                *(self._ai_client.embed(doc.content) for doc in documents if doc is not None),
                return_exceptions=True,
            )
            vectors = iter(embedded)
            for (source_type, source_id), document in zip(batch, documents):
                if document is None:
                    logger.warning(
                        "Index item skipped, source not found", source_type=source_type, source_id=str(source_id)
                    )
                    results.append("")
                    continue
                vector = next(vectors)
                if isinstance(vector, BaseException):
                    logger.error(
                        "Index item failed",
                        source_type=source_type,
                        source_id=str(source_id),
                        error=str(vector),
                    )
                    results.append("")
                    continue
                await self._store(tenant, document, vector)
                results.append(str(source_id))

        logger.info(
            "Batch index finished",
            tenant_id=str(tenant.tenant_id),
            requested=len(items),
            indexed=sum(1 for r in results if r),
        )
        return results

    async def search(
        self,
        tenant: TenantContext,
        query: str,
        source_types: Sequence[str] | None = None,
        limit: int = 10,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> list[VectorSearchResult]:
        """Stored sources most similar to `query`, above `min_similarity`, best first."""
        if not query.strip():
            raise ValidationError(message="Query text is required", field="query")
        for source_type in source_types or []:
            self._repo_for(source_type)

        query_vector = await self._ai_client.embed(query)
        candidates = await self._embedding_repo.list_candidates(tenant.tenant_id, source_types)

        scored = []
        for candidate in candidates:
            similarity = cosine_similarity(query_vector, candidate.embedding)
            if similarity >= min_similarity:
                scored.append(
                    VectorSearchResult(
                        source_type=candidate.source_type,
                        source_id=candidate.source_id,
                        content=candidate.content,
                        similarity=similarity,
                        metadata=dict(candidate.meta or {}),
                    )
                )
        scored.sort(key=lambda r: r.similarity, reverse=True)
        return scored[:limit]

    async def recommendations(self, tenant: TenantContext) -> list[VectorSearchResult]:
        """Content related to the caller's last five completed questions."""
        recent = await self._query_repo.list_where(
            tenant.tenant_id,
            [AIQuery.user_id == tenant.user_id, AIQuery.status == AIQueryStatus.COMPLETED],
            order_by=[AIQuery.created_at.desc()],
            limit=RECENT_QUERY_WINDOW,
        )
        if not recent:
            return []
        context = " ".join(q.query_text for q in recent)
        return await self.search(
            tenant, context, limit=RECOMMENDATION_LIMIT, min_similarity=RECOMMENDATION_MIN_SIMILARITY
        )

    async def stats(self, tenant: TenantContext) -> dict[str, Any]:
        by_type = await self._embedding_repo.count_by(tenant.tenant_id, AIEmbedding.source_type)
        recent = await self._embedding_repo.list_where(
            tenant.tenant_id, order_by=[AIEmbedding.updated_at.desc()], limit=10
        )
        return {
            "total_embeddings": sum(by_type.values()),
            "by_source_type": by_type,
            "recent": [
                {
                    "source_type": e.source_type,
                    "source_id": str(e.source_id),
                    "model": e.model,
                    "updated_at": e.updated_at.isoformat() if e.updated_at else None,
                }
                for e in recent
            ],
        }

    async def cleanup_orphans(self, tenant: TenantContext) -> int:
        """Delete embeddings whose source row no longer exists.

        Returns:
            Number of embeddings deleted.
        """
        embeddings = await self._embedding_repo.list_candidates(tenant.tenant_id)
        by_type: dict[str, list[AIEmbedding]] = {}
        for embedding in embeddings:
            by_type.setdefault(embedding.source_type, []).append(embedding)

        orphans: list[AIEmbedding] = []
        for source_type, group in by_type.items():
            repo = self._source_repos.get(source_type)
            if repo is None:
                orphans.extend(group)
                continue
            existing = await repo.existing_ids(tenant.tenant_id, [e.source_id for e in group])
            orphans.extend(e for e in group if e.source_id not in existing)

        deleted = await self._embedding_repo.delete_many(orphans) if orphans else 0
        logger.info("Orphaned embeddings removed", tenant_id=str(tenant.tenant_id), deleted=deleted)
        return deleted
