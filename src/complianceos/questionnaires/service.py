"""Security questionnaire workflow.

A questionnaire is created with its questions (keywords are extracted on
the way in), assigned to someone (-> IN_PROGRESS), answered question by
question and reviewed. Each question has at most one working answer:

    DRAFT -> SUBMITTED -> APPROVED | REJECTED | REQUIRES_REVISION

Once every question has an APPROVED answer, an IN_PROGRESS questionnaire
moves to UNDER_REVIEW on its own. Questionnaires imported from a CSV file
pass through UPLOADED and PARSING before they reach PARSED.
"""

import csv
import io
import uuid
from datetime import datetime
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    Answer,
    AnswerStatus,
    Question,
    Questionnaire,
    QuestionnaireStatus,
    QuestionType,
)
from complianceos.core.services import ActivityService, TrackedService, utcnow
from complianceos.questionnaires.keywords import extract_keywords
from complianceos.questionnaires.parser import parse_csv

logger = get_logger(__name__)

# Answers can no longer change once the questionnaire reaches one of these.
_CLOSED_STATUSES = frozenset(
    {
        QuestionnaireStatus.APPROVED,
        QuestionnaireStatus.EXPORTED,
        QuestionnaireStatus.DELIVERED,
        QuestionnaireStatus.ARCHIVED,
    }
)
_SUBMITTABLE = frozenset({AnswerStatus.DRAFT, AnswerStatus.REJECTED, AnswerStatus.REQUIRES_REVISION})
_REVIEW_DECISIONS = frozenset({AnswerStatus.APPROVED, AnswerStatus.REJECTED, AnswerStatus.REQUIRES_REVISION})

EXPORT_COLUMNS = ["section", "order", "question", "question_type", "answer", "answer_status", "confidence"]
DEFAULT_IMPORT_TITLE = "Security Questionnaire"


def _validate_questions(questions: list[dict[str, Any]]) -> None:
    for index, item in enumerate(questions):
        if not str(item.get("question_text", "")).strip():
            raise ValidationError(message=f"Question {index + 1} has no text", field="questions")
        question_type = item.get("question_type") or QuestionType.TEXT
        if question_type not in QuestionType.__members__:
            raise ValidationError(message=f"Unknown question type '{question_type}'", field="question_type")


class QuestionnaireService(TrackedService):
    """Questionnaire lifecycle, answers and reporting.

    Args:
        questionnaire_repo: Repository for Questionnaire.
        question_repo: QuestionRepository (questions and answers).
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        questionnaire_repo: Any,
        question_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._questionnaire_repo = questionnaire_repo
        self._question_repo = question_repo

    @staticmethod
    def _ensure_open(questionnaire: Questionnaire) -> None:
        if questionnaire.status in _CLOSED_STATUSES:
            raise ValidationError(
                message=f"Questionnaire is {questionnaire.status}; answers can no longer change",
                field="status",
            )

    async def create_questionnaire(
        self,
        tenant: TenantContext,
        title: str,
        questions: list[dict[str, Any]],
        requester_name: str | None = None,
        due_date: datetime | None = None,
        correlation_id: str | None = None,
    ) -> Questionnaire:
        """Create a PARSED questionnaire and its questions.

        Args:
            tenant: Caller context.
            title: Questionnaire title.
            questions: Dicts with `question_text` and optionally `question_type`,
                `section`, `control_mapping` and `risk_level`.
            requester_name: Customer or requester.
            due_date: Response deadline.
            correlation_id: Request correlation ID.

        Returns:
            The created Questionnaire.

        Raises:
            ValidationError: On a missing title, an empty question or an unknown question type.
        """
        if not title.strip():
            raise ValidationError(message="title is required", field="title")
        _validate_questions(questions)

        questionnaire = await self._questionnaire_repo.add(
            Questionnaire(
                tenant_id=tenant.tenant_id,
                title=title.strip(),
                requester_name=requester_name,
                due_date=due_date,
                status=QuestionnaireStatus.PARSED,
                created_by=tenant.user_id,
            )
        )
        await self._add_questions(tenant, questionnaire, questions)

        logger.info(
            "Questionnaire created",
            questionnaire_id=str(questionnaire.id),
            tenant_id=str(tenant.tenant_id),
            question_count=len(questions),
        )
        await self._track(
            tenant,
            "compliance.questionnaire.created",
            "questionnaire",
            questionnaire.id,
            "create",
            {"title": questionnaire.title, "question_count": len(questions)},
            correlation_id,
        )
        return questionnaire

    async def _add_questions(
        self, tenant: TenantContext, questionnaire: Questionnaire, questions: list[dict[str, Any]]
    ) -> None:
        for index, item in enumerate(questions):
            text = str(item["question_text"]).strip()
            await self._question_repo.add(
                Question(
                    tenant_id=tenant.tenant_id,
                    questionnaire_id=questionnaire.id,
                    question_text=text,
                    question_type=item.get("question_type") or QuestionType.TEXT,
                    section=item.get("section"),
                    order_index=index,
                    keywords=extract_keywords(text),
                    control_mapping=[str(cid) for cid in item.get("control_mapping") or []],
                    risk_level=item.get("risk_level"),
                )
            )

    async def import_csv(
        self,
        tenant: TenantContext,
        csv_text: str,
        title: str | None = None,
        requester_name: str | None = None,
        due_date: datetime | None = None,
        correlation_id: str | None = None,
    ) -> Questionnaire:
        """Create a questionnaire from an uploaded CSV file.

        The questionnaire is stored as UPLOADED, moves to PARSING while the
        rows are read and ends PARSED with its questions. A title or requester
        given by the caller wins over one found in the file.

        Args:
            tenant: Caller context.
            csv_text: File contents.
            title: Questionnaire title.
            requester_name: Customer or requester.
            due_date: Response deadline.
            correlation_id: Request correlation ID.

        Returns:
            The PARSED Questionnaire.

        Raises:
            ValidationError: When the file is empty or unreadable, or yields no valid questions.
        """
        given_title = (title or "").strip()
        questionnaire = await self._questionnaire_repo.add(
            Questionnaire(
                tenant_id=tenant.tenant_id,
                title=given_title or DEFAULT_IMPORT_TITLE,
                requester_name=requester_name,
                due_date=due_date,
                status=QuestionnaireStatus.UPLOADED,
                created_by=tenant.user_id,
            )
        )
        questionnaire.status = QuestionnaireStatus.PARSING
        questionnaire = await self._questionnaire_repo.save(questionnaire)

        try:
            parsed = parse_csv(csv_text)
            if not parsed.questions:
                raise ValidationError(message="No questions found in the uploaded file", field="file")
            _validate_questions(parsed.questions)
        except ValidationError as exc:
            logger.warning(
                "Questionnaire upload could not be parsed",
                questionnaire_id=str(questionnaire.id),
                tenant_id=str(tenant.tenant_id),
                error=exc.message,
            )
            raise

        if not given_title and parsed.title:
            questionnaire.title = parsed.title
        if requester_name is None:
            questionnaire.requester_name = parsed.requester_name
        await self._add_questions(tenant, questionnaire, parsed.questions)
        questionnaire.status = QuestionnaireStatus.PARSED
        questionnaire = await self._questionnaire_repo.save(questionnaire)

        logger.info(
            "Questionnaire parsed from upload",
            questionnaire_id=str(questionnaire.id),
            tenant_id=str(tenant.tenant_id),
            question_count=len(parsed.questions),
        )
        await self._track(
            tenant,
            "compliance.questionnaire.created",
            "questionnaire",
            questionnaire.id,
            "import",
            {"title": questionnaire.title, "question_count": len(parsed.questions), "source": "csv"},
            correlation_id,
        )
        return questionnaire

    async def list_questionnaires(
        self,
        tenant: TenantContext,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters = [Questionnaire.status == status] if status else []
        rows, total = await self._questionnaire_repo.list_page(tenant.tenant_id, filters, page, page_size)
        return to_page(rows, total, page, page_size)

    async def get_questionnaire(self, questionnaire_id: uuid.UUID, tenant: TenantContext) -> Questionnaire:
        return await self._questionnaire_repo.get_by_id(questionnaire_id, tenant.tenant_id)

    async def get_detail(self, questionnaire_id: uuid.UUID, tenant: TenantContext) -> dict[str, Any]:
        """The questionnaire, its questions in order with their answers, and progress."""
        questionnaire = await self.get_questionnaire(questionnaire_id, tenant)
        questions = await self._question_repo.list_for_questionnaire(tenant.tenant_id, questionnaire_id)
        answers = {a.question_id: a for a in await self._question_repo.list_answers(tenant.tenant_id, questionnaire_id)}
        approved = sum(1 for a in answers.values() if a.status == AnswerStatus.APPROVED)
        return {
            "questionnaire": questionnaire,
            "questions": [{"question": q, "answer": answers.get(q.id)} for q in questions],
            "progress": {
                "total_questions": len(questions),
                "answered": len(answers),
                "approved": approved,
                "completion_percentage": round(approved / len(questions) * 100, 2) if questions else 0.0,
            },
        }

    async def assign(
        self,
        questionnaire_id: uuid.UUID,
        tenant: TenantContext,
        assignee_id: uuid.UUID,
        correlation_id: str | None = None,
    ) -> Questionnaire:
        """Assign the questionnaire and move it to IN_PROGRESS."""
        questionnaire = await self.get_questionnaire(questionnaire_id, tenant)
        self._ensure_open(questionnaire)
        old_status = questionnaire.status
        questionnaire.assigned_to = assignee_id
        questionnaire.status = QuestionnaireStatus.IN_PROGRESS
        questionnaire = await self._questionnaire_repo.save(questionnaire)
        await self._track(
            tenant,
            "compliance.questionnaire.assigned",
            "questionnaire",
            questionnaire.id,
            "assign",
            {"assignee_id": str(assignee_id), "old_status": old_status},
            correlation_id,
        )
        return questionnaire

    async def update_status(
        self,
        questionnaire_id: uuid.UUID,
        tenant: TenantContext,
        new_status: str,
        correlation_id: str | None = None,
    ) -> Questionnaire:
        """Set the status directly; APPROVED stamps completion_date."""
        if new_status not in QuestionnaireStatus.__members__:
            raise ValidationError(message=f"Unknown questionnaire status '{new_status}'", field="status")
        questionnaire = await self.get_questionnaire(questionnaire_id, tenant)
        old_status = questionnaire.status
        questionnaire.status = new_status
        if new_status == QuestionnaireStatus.APPROVED:
            questionnaire.completion_date = utcnow()
        questionnaire = await self._questionnaire_repo.save(questionnaire)
        await self._track(
            tenant,
            "compliance.questionnaire.status_changed",
            "questionnaire",
            questionnaire.id,
            "update_status",
            {"old_status": old_status, "new_status": new_status},
            correlation_id,
        )
        return questionnaire

    async def _load_question(self, question_id: uuid.UUID, tenant: TenantContext) -> tuple[Question, Questionnaire]:
        question = await self._question_repo.get_by_id(question_id, tenant.tenant_id)
        questionnaire = await self.get_questionnaire(question.questionnaire_id, tenant)
        return question, questionnaire

    async def _require_answer(self, question_id: uuid.UUID, tenant: TenantContext) -> Answer:
        answer = await self._question_repo.get_answer(tenant.tenant_id, question_id)
        if answer is None:
            raise ValidationError(message="Question has no answer yet", field="question_id")
        return answer

    async def save_answer(
        self,
        question_id: uuid.UUID,
        tenant: TenantContext,
        answer_text: str,
        evidence_ids: list[uuid.UUID] | None = None,
        confidence: float | None = None,
        source_type: str | None = None,
        correlation_id: str | None = None,
    ) -> Answer:
        """Create or overwrite the question's answer as a DRAFT."""
        if not answer_text.strip():
            raise ValidationError(message="answer_text is required", field="answer_text")
        question, questionnaire = await self._load_question(question_id, tenant)
        self._ensure_open(questionnaire)

        answer = await self._question_repo.get_answer(tenant.tenant_id, question_id)
        if answer is None:
            answer = await self._question_repo.add_answer(
                Answer(
                    tenant_id=tenant.tenant_id,
                    question_id=question.id,
                    questionnaire_id=questionnaire.id,
                    answer_text=answer_text,
                    status=AnswerStatus.DRAFT,
                    confidence=confidence,
                    source_type=source_type,
                    evidence_ids=[str(e) for e in evidence_ids or []],
                    created_by=tenant.user_id,
                )
            )
            action = "create"
        else:
            answer.answer_text = answer_text
            answer.status = AnswerStatus.DRAFT
            answer.confidence = confidence
            answer.source_type = source_type
            if evidence_ids is not None:
                answer.evidence_ids = [str(e) for e in evidence_ids]
            answer = await self._question_repo.save(answer)
            action = "update"

        await self._track(
            tenant,
            "compliance.questionnaire.answer_saved",
            "answer",
            answer.id,
            action,
            {"question_id": str(question_id), "questionnaire_id": str(questionnaire.id)},
            correlation_id,
        )
        return answer

    async def submit_answer(
        self, question_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> Answer:
        _, questionnaire = await self._load_question(question_id, tenant)
        self._ensure_open(questionnaire)
        answer = await self._require_answer(question_id, tenant)
        if answer.status not in _SUBMITTABLE:
            raise ValidationError(message=f"Cannot submit an answer in status {answer.status}", field="status")

        answer.status = AnswerStatus.SUBMITTED
        answer = await self._question_repo.save(answer)
        await self._track(
            tenant,
            "compliance.questionnaire.answer_submitted",
            "answer",
            answer.id,
            "submit",
            {"question_id": str(question_id)},
            correlation_id,
        )
        return answer

    async def review_answer(
        self,
        question_id: uuid.UUID,
        tenant: TenantContext,
        decision: str,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> Answer:
        """Approve, reject or send back a SUBMITTED answer.

        After an approval the questionnaire is checked for completion.

        Raises:
            ValidationError: On an unknown decision or an answer that is not SUBMITTED.
        """
        if decision not in _REVIEW_DECISIONS:
            raise ValidationError(
                message="decision must be APPROVED, REJECTED or REQUIRES_REVISION", field="decision"
            )
        _, questionnaire = await self._load_question(question_id, tenant)
        self._ensure_open(questionnaire)
        answer = await self._require_answer(question_id, tenant)
        if answer.status != AnswerStatus.SUBMITTED:
            raise ValidationError(message="Only SUBMITTED answers can be reviewed", field="status")

        answer.status = decision
        answer.reviewed_by = tenant.user_id
        answer.reviewed_at = utcnow()
        answer.review_notes = notes
        answer = await self._question_repo.save(answer)
        await self._track(
            tenant,
            "compliance.questionnaire.answer_reviewed",
            "answer",
            answer.id,
            "review",
            {"question_id": str(question_id), "decision": decision},
            correlation_id,
        )

        if decision == AnswerStatus.APPROVED:
            await self._complete_if_all_approved(questionnaire, tenant, correlation_id)
        return answer

    async def _complete_if_all_approved(
        self, questionnaire: Questionnaire, tenant: TenantContext, correlation_id: str | None
    ) -> None:
        if questionnaire.status != QuestionnaireStatus.IN_PROGRESS:
            return
        questions = await self._question_repo.list_for_questionnaire(tenant.tenant_id, questionnaire.id)
        answers = await self._question_repo.list_answers(tenant.tenant_id, questionnaire.id)
        approved = {a.question_id for a in answers if a.status == AnswerStatus.APPROVED}
        if not questions or any(q.id not in approved for q in questions):
            return

        questionnaire.status = QuestionnaireStatus.UNDER_REVIEW
        await self._questionnaire_repo.save(questionnaire)
        logger.info("Questionnaire fully answered", questionnaire_id=str(questionnaire.id))
        await self._track(
            tenant,
            "compliance.questionnaire.status_changed",
            "questionnaire",
            questionnaire.id,
            "update_status",
            {"old_status": QuestionnaireStatus.IN_PROGRESS, "new_status": QuestionnaireStatus.UNDER_REVIEW},
            correlation_id,
        )

    async def stats(self, tenant: TenantContext) -> dict[str, Any]:
        """Counts by workflow stage, plus overdue (due date passed and not APPROVED)."""
        by_status = await self._questionnaire_repo.count_by(tenant.tenant_id, Questionnaire.status)
        overdue = await self._questionnaire_repo.count(
            tenant.tenant_id,
            [
                Questionnaire.due_date.is_not(None),
                Questionnaire.due_date < utcnow(),
                Questionnaire.status != QuestionnaireStatus.APPROVED,
            ],
        )
        return {
            "total": sum(by_status.values()),
            "in_progress": by_status.get(QuestionnaireStatus.IN_PROGRESS, 0),
            "under_review": by_status.get(QuestionnaireStatus.UNDER_REVIEW, 0),
            "approved": by_status.get(QuestionnaireStatus.APPROVED, 0),
            "overdue": overdue,
            "by_status": by_status,
        }

    async def export_csv(
        self, questionnaire_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> str:
        """Questions and answers in order as CSV."""
        detail = await self.get_detail(questionnaire_id, tenant)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for item in detail["questions"]:
            question, answer = item["question"], item["answer"]
            writer.writerow(
                {
                    "section": question.section or "",
                    "order": question.order_index + 1,
                    "question": question.question_text,
                    "question_type": question.question_type,
                    "answer": answer.answer_text if answer else "",
                    "answer_status": answer.status if answer else "",
                    "confidence": "" if answer is None or answer.confidence is None else answer.confidence,
                }
            )
        await self._track(
            tenant,
            "compliance.questionnaire.exported",
            "questionnaire",
            questionnaire_id,
            "export",
            {"format": "CSV", "question_count": len(detail["questions"])},
            correlation_id,
        )
        return buffer.getvalue()
