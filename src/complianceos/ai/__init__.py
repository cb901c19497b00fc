"""AI assistance: vector search over compliance artifacts and the Q&A assistant."""

from complianceos.ai.service import AIAssistantService
from complianceos.ai.vector_engine import VectorSearchEngine, cosine_similarity

__all__ = [
    "AIAssistantService",
    "VectorSearchEngine",
    "cosine_similarity",
]
