"""Reusable answer library.

Entries are standard answers matched to questions by key phrases. Every use
of an entry bumps usage_count and nudges confidence_score up by one (capped
at 100), so frequently reused answers rank higher in suggestions.
"""

import csv
import io
import uuid
from datetime import timedelta
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import AnswerCategory, AnswerLibraryEntry
from complianceos.core.services import ActivityService, TrackedService, utcnow
from complianceos.questionnaires.keywords import extract_keywords

logger = get_logger(__name__)

MAX_CONFIDENCE = 100
INITIAL_CONFIDENCE = 50
LOW_CONFIDENCE_THRESHOLD = 30
STALE_AFTER_DAYS = 180

CSV_COLUMNS = ["category", "key_phrases", "standard_answer", "usage_count", "confidence_score", "is_active"]

_UPDATABLE_FIELDS = frozenset({"category", "key_phrases", "standard_answer", "evidence_references", "is_active"})

# First match wins; GENERAL_SECURITY otherwise.
_CATEGORY_TERMS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (AnswerCategory.ACCESS_CONTROL, ("access", "authentication", "authorization")),
    (AnswerCategory.DATA_PROTECTION, ("encryption", "data protection", "privacy")),
    (AnswerCategory.INCIDENT_RESPONSE, ("incident", "response", "breach")),
    (AnswerCategory.NETWORK_SECURITY, ("network", "firewall", "vpn")),
    (AnswerCategory.PHYSICAL_SECURITY, ("physical", "facility", "building")),
    (AnswerCategory.BUSINESS_CONTINUITY, ("backup", "recovery", "continuity")),
    (AnswerCategory.VENDOR_MANAGEMENT, ("vendor", "third party", "supplier")),
    (AnswerCategory.COMPLIANCE_FRAMEWORK, ("compliance", "audit", "framework")),
)


def categorize_question(question_text: str) -> str:
    """Pick the library category for a question from its wording."""
    text = question_text.lower()
    for category, terms in _CATEGORY_TERMS:
        if any(term in text for term in terms):
            return category
    return AnswerCategory.GENERAL_SECURITY


def _validate_category(category: str) -> None:
    if category not in AnswerCategory.__members__:
        raise ValidationError(message=f"Unknown answer category '{category}'", field="category")


def _clean_phrases(phrases: list[str]) -> list[str]:
    cleaned: list[str] = []
    for phrase in phrases:
        value = phrase.strip().lower()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


class AnswerLibraryService(TrackedService):
    """CRUD, search, usage tracking and CSV exchange for the answer library.

    Args:
        library_repo: AnswerLibraryRepository.
        question_repo: QuestionRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        library_repo: Any,
        question_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._library_repo = library_repo
        self._question_repo = question_repo

    async def create_entry(
        self,
        tenant: TenantContext,
        category: str,
        standard_answer: str,
        key_phrases: list[str],
        evidence_references: list[str] | None = None,
        correlation_id: str | None = None,
    ) -> AnswerLibraryEntry:
        """Add an active entry with the initial confidence of 50.

        Raises:
            ValidationError: On an unknown category or an empty answer.
        """
        _validate_category(category)
        if not standard_answer.strip():
            raise ValidationError(message="standard_answer is required", field="standard_answer")

        entry = await self._library_repo.add(
            AnswerLibraryEntry(
                tenant_id=tenant.tenant_id,
                category=category,
                key_phrases=_clean_phrases(key_phrases),
                standard_answer=standard_answer.strip(),
                evidence_references=list(evidence_references or []),
                confidence_score=INITIAL_CONFIDENCE,
                created_by=tenant.user_id,
            )
        )
        await self._track(
            tenant,
            "compliance.answer_library.created",
            "answer_library_entry",
            entry.id,
            "create",
            {"category": category},
            correlation_id,
        )
        return entry

    async def list_entries(
        self,
        tenant: TenantContext,
        category: str | None = None,
        active_only: bool = True,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters: list[Any] = []
        if category:
            filters.append(AnswerLibraryEntry.category == category)
        if active_only:
            filters.append(AnswerLibraryEntry.is_active.is_(True))
        rows, total = await self._library_repo.list_page(
            tenant.tenant_id,
            filters,
            page,
            page_size,
            order_by=[AnswerLibraryEntry.confidence_score.desc(), AnswerLibraryEntry.usage_count.desc()],
        )
        return to_page(rows, total, page, page_size)

    async def get_entry(self, entry_id: uuid.UUID, tenant: TenantContext) -> AnswerLibraryEntry:
        return await self._library_repo.get_by_id(entry_id, tenant.tenant_id)

    async def update_entry(
        self,
        entry_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> AnswerLibraryEntry:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                message=f"Fields not updatable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0]
            )
        if "category" in changes:
            _validate_category(changes["category"])
        if "key_phrases" in changes:
            changes = {**changes, "key_phrases": _clean_phrases(changes["key_phrases"])}

        entry = await self._library_repo.get_by_id(entry_id, tenant.tenant_id)
        for name, value in changes.items():
            setattr(entry, name, value)
        entry = await self._library_repo.save(entry)

        await self._track(
            tenant,
            "compliance.answer_library.updated",
            "answer_library_entry",
            entry.id,
            "update",
            {"fields": sorted(changes)},
            correlation_id,
        )
        return entry

    async def deactivate_entry(
        self, entry_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> AnswerLibraryEntry:
        """Soft-delete: inactive entries are kept but never suggested."""
        entry = await self._library_repo.get_by_id(entry_id, tenant.tenant_id)
        entry.is_active = False
        entry = await self._library_repo.save(entry)
        await self._track(
            tenant,
            "compliance.answer_library.deactivated",
            "answer_library_entry",
            entry.id,
            "deactivate",
            {},
            correlation_id,
        )
        return entry

    async def search(self, tenant: TenantContext, query: str, limit: int = 20) -> list[AnswerLibraryEntry]:
        """Active entries whose answer or a key phrase contains `query`, most confident first."""
        if not query.strip():
            raise ValidationError(message="Search query is required", field="q")
        return await self._library_repo.search(tenant.tenant_id, query.strip(), limit=limit)

    async def record_usage(
        self, entry_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> AnswerLibraryEntry:
        """usage_count + 1, confidence_score + 1 (max 100), last_used_at = now."""
        entry = await self._library_repo.get_by_id(entry_id, tenant.tenant_id)
        entry.usage_count += 1
        entry.confidence_score = min(MAX_CONFIDENCE, entry.confidence_score + 1)
        entry.last_used_at = utcnow()
        entry = await self._library_repo.save(entry)
        await self._track(
            tenant,
            "compliance.answer_library.used",
            "answer_library_entry",
            entry.id,
            "use",
            {"usage_count": entry.usage_count, "confidence_score": entry.confidence_score},
            correlation_id,
        )
        return entry

    async def promote_answer(
        self,
        question_id: uuid.UUID,
        tenant: TenantContext,
        answer_text: str | None = None,
        correlation_id: str | None = None,
    ) -> AnswerLibraryEntry:
        """Turn a question's answer into a library entry.

        The category comes from the question wording, key phrases from its
        extracted keywords and evidence references from its control mapping.

        Args:
            question_id: Answered question.
            tenant: Caller context.
            answer_text: Text to store; defaults to the question's saved answer.
            correlation_id: Request correlation ID.

        Raises:
            NotFoundError: If the question does not exist.
            ValidationError: If there is no answer text to promote.
        """
        question = await self._question_repo.get_by_id(question_id, tenant.tenant_id)
        if answer_text is None:
            answer = await self._question_repo.get_answer(tenant.tenant_id, question_id)
            answer_text = answer.answer_text if answer is not None else None
        if not answer_text or not answer_text.strip():
            raise ValidationError(message="Question has no answer to promote", field="answer_text")

        entry = await self._library_repo.add(
            AnswerLibraryEntry(
                tenant_id=tenant.tenant_id,
                category=categorize_question(question.question_text),
                key_phrases=list(question.keywords or []) or extract_keywords(question.question_text),
                standard_answer=answer_text.strip(),
                evidence_references=[str(cid) for cid in question.control_mapping or []],
                usage_count=1,
                confidence_score=INITIAL_CONFIDENCE,
                last_used_at=utcnow(),
                created_by=tenant.user_id,
            )
        )
        await self._track(
            tenant,
            "compliance.answer_library.promoted",
            "answer_library_entry",
            entry.id,
            "promote",
            {"question_id": str(question_id), "category": entry.category},
            correlation_id,
        )
        return entry

    async def stats(self, tenant: TenantContext) -> dict[str, Any]:
        entries = await self._library_repo.list_where(tenant.tenant_id)
        active = [e for e in entries if e.is_active]
        by_category: dict[str, int] = {}
        for entry in entries:
            by_category[entry.category] = by_category.get(entry.category, 0) + 1
        average = round(sum(e.confidence_score for e in entries) / len(entries), 2) if entries else 0.0
        most_used = sorted(entries, key=lambda e: e.usage_count, reverse=True)[:5]
        return {
            "total_entries": len(entries),
            "active_entries": len(active),
            "by_category": by_category,
            "average_confidence": average,
            "most_used": [
                {
                    "id": str(e.id),
                    "category": e.category,
                    "usage_count": e.usage_count,
                    "standard_answer": e.standard_answer,
                }
                for e in most_used
            ],
        }

    async def export_csv(self, tenant: TenantContext) -> str:
        """All entries as CSV; key phrases are joined with ';'."""
        entries = await self._library_repo.list_where(
            tenant.tenant_id, order_by=[AnswerLibraryEntry.category.asc(), AnswerLibraryEntry.created_at.asc()]
        )
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for entry in entries:
            writer.writerow(
                {
                    "category": entry.category,
                    "key_phrases": ";".join(entry.key_phrases or []),
                    "standard_answer": entry.standard_answer,
                    "usage_count": entry.usage_count,
                    "confidence_score": entry.confidence_score,
                    "is_active": "true" if entry.is_active else "false",
                }
            )
        return buffer.getvalue()

    async def import_csv(
        self,
        tenant: TenantContext,
        csv_text: str,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Create entries from CSV rows with at least `category` and `standard_answer`.

        Rows with an unknown category or an empty answer are reported in
        `errors`. Rows whose answer already exists in the library are skipped.

        Returns:
            {"imported": int, "skipped": int, "errors": [str]}
        """
        reader = csv.DictReader(io.StringIO(csv_text))
        headers = {h.strip().lower() for h in reader.fieldnames or []}
        if not {"category", "standard_answer"} <= headers:
            raise ValidationError(message="CSV must have category and standard_answer columns", field="file")

        existing = {e.standard_answer.strip().lower() for e in await self._library_repo.list_where(tenant.tenant_id)}
        imported, skipped, errors = 0, 0, []
        # Row 1 is the header.
        for row_number, raw in enumerate(reader, start=2):
            row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw.items()}
            category = row.get("category", "").upper()
            answer = row.get("standard_answer", "")
            if not answer:
                errors.append(f"Row {row_number}: standard_answer is empty")
                continue
            if category not in AnswerCategory.__members__:
                errors.append(f"Row {row_number}: unknown category '{category}'")
                continue
            if answer.lower() in existing:
                skipped += 1
                continue
            await self._library_repo.add(
                AnswerLibraryEntry(
                    tenant_id=tenant.tenant_id,
                    category=category,
                    key_phrases=_clean_phrases(row.get("key_phrases", "").split(";")),
                    standard_answer=answer,
                    evidence_references=[],
                    confidence_score=INITIAL_CONFIDENCE,
                    created_by=tenant.user_id,
                )
            )
            existing.add(answer.lower())
            imported += 1

        logger.info(
            "Answer library CSV imported",
            tenant_id=str(tenant.tenant_id),
            imported=imported,
            skipped=skipped,
            errors=len(errors),
        )
        await self._track(
            tenant,
            "compliance.answer_library.imported",
            "answer_library",
            tenant.tenant_id,
            "import",
            {"imported": imported, "skipped": skipped, "errors": len(errors)},
            correlation_id,
        )
        return {"imported": imported, "skipped": skipped, "errors": errors}

    async def suggest_improvements(self, tenant: TenantContext) -> list[dict[str, Any]]:
        """Active entries worth revisiting, high priority first.

        Low confidence (< 30) is high priority. An entry never used, or
        unused for more than 180 days, is medium priority.
        """
        now = utcnow()
        stale_before = now - timedelta(days=STALE_AFTER_DAYS)
        improvements = []
        for entry in await self._library_repo.list_active(tenant.tenant_id):
            reasons: list[str] = []
            priority = "low"
            last_used = entry.last_used_at or entry.created_at
            if last_used is not None and last_used < stale_before:
                reasons.append(f"Not used in over {STALE_AFTER_DAYS} days; review for accuracy")
                priority = "medium"
            if entry.confidence_score < LOW_CONFIDENCE_THRESHOLD:
                reasons.append("Low confidence score; improve the answer quality")
                priority = "high"
            if reasons:
                improvements.append({"entry_id": str(entry.id), "priority": priority, "suggestions": reasons})

        order = {"high": 0, "medium": 1, "low": 2}
        improvements.sort(key=lambda item: order[item["priority"]])
        return improvements
