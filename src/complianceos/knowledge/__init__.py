"""Knowledge base: guidance articles, categories, a glossary, search and bookmarks."""

from complianceos.knowledge.service import KnowledgeService, slugify

__all__ = ["KnowledgeService", "slugify"]
