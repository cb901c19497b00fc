"""Answer suggestions for questionnaire questions.

Four sources feed the ranking, and the five most confident suggestions are
returned:

- LIBRARY: active answer-library entries sharing key phrases with the question
- EVIDENCE: APPROVED evidence linked to the controls the question maps to
- PATTERN: canned answers for yes/no questions and common topics, offered
  only when the tenant holds matching approved evidence
- AI_GENERATED: a contextual template chosen by topic
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.observability import get_logger
from complianceos.core.models import Evidence, Question, QuestionType
from complianceos.core.services import utcnow
from complianceos.questionnaires.keywords import extract_keywords

logger = get_logger(__name__)

MAX_SUGGESTIONS = 5
LIBRARY_MIN_CONFIDENCE = 30.0
EVIDENCE_MIN_CONFIDENCE = 25.0
_LIBRARY_CANDIDATES = 3
_EVIDENCE_CANDIDATES = 5

_AFFIRMATIVE_TERMS = ("implemented", "established", "maintained")
_NEGATIVE_WORDS = frozenset({"not", "never", "no"})

# (trigger terms, answer, confidence); the trigger terms also search approved evidence
_TOPIC_PATTERNS: tuple[tuple[tuple[str, ...], str, float], ...] = (
    (
        ("policy", "procedure"),
        "Yes, we have established and maintain comprehensive security policies. Our policies are "
        "regularly reviewed and updated to ensure they remain current and effective.",
        75.0,
    ),
    (
        ("training", "awareness"),
        "Yes, we provide regular security training and awareness programs to all employees. "
        "Training completion is tracked and documented.",
        70.0,
    ),
    (
        ("incident", "response"),
        "Yes, we have established incident response procedures and maintain an incident response "
        "team. Our procedures are tested regularly through drills and exercises.",
        70.0,
    ),
)

_CONTEXTUAL_TEMPLATES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("access control",),
        "We implement comprehensive access controls including user authentication, authorization, "
        "and regular access reviews. Access is granted based on the principle of least privilege.",
    ),
    (
        ("encryption",),
        "We use industry-standard encryption for data at rest and in transit. Our encryption "
        "implementation is regularly reviewed.",
    ),
    (
        ("monitoring", "logging"),
        "We maintain logging and monitoring systems to track security events and detect potential "
        "threats. Logs are regularly reviewed and analyzed.",
    ),
    (
        ("backup", "recovery"),
        "We maintain regular backups of critical data and systems. Backup and recovery procedures "
        "are tested regularly to ensure business continuity.",
    ),
)
_CONTEXTUAL_CONFIDENCE = 60.0
_GENERIC_ANSWER = (
    "We have implemented appropriate security controls and procedures to address this requirement. "
    "Our security program is regularly reviewed and updated."
)
_GENERIC_CONFIDENCE = 45.0


@dataclass(frozen=True)
class AnswerSuggestion:
    """One candidate answer for a question.

    Attributes:
        suggested_answer: Proposed answer text.
        confidence_score: 0-100.
        source_type: LIBRARY, EVIDENCE, PATTERN or AI_GENERATED.
        source_id: Library entry or evidence id, when there is one.
        evidence_ids: Evidence supporting the answer.
        reasoning: Short human-readable explanation.
        metadata: Source-specific details.
    """

    suggested_answer: str
    confidence_score: float
    source_type: str
    reasoning: str
    source_id: uuid.UUID | None = None
    evidence_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def library_confidence(matched: int, total_keywords: int, library_confidence_score: float) -> float:
    """min(100, match_ratio x 70 + library confidence x 0.3)."""
    ratio = matched / total_keywords if total_keywords else 0.0
    return min(100.0, ratio * 70 + library_confidence_score * 0.3)


def evidence_confidence(matched_controls: int, total_controls: int, updated_at: datetime, now: datetime) -> float:
    """min(100, control_ratio x 60 + max(0, 20 - days since the evidence was updated))."""
    ratio = matched_controls / total_controls if total_controls else 0.0
    days_since_update = (now - updated_at).total_seconds() / 86400
    return min(100.0, ratio * 60 + max(0.0, 20 - days_since_update))


def yes_no_suggestion(question_text: str) -> AnswerSuggestion:
    """Conservative yes/no guess from the phrasing of the question."""
    text = question_text.lower()
    answer, confidence, reasoning = "No", 40.0, "Default conservative answer"
    if any(term in text for term in _AFFIRMATIVE_TERMS):
        answer, confidence, reasoning = "Yes", 60.0, "Question asks about implementation"
    if _NEGATIVE_WORDS & set(re.findall(r"[a-z]+", text)):
        answer, confidence, reasoning = "No", 70.0, "Question contains negative phrasing"
    return AnswerSuggestion(
        suggested_answer=answer,
        confidence_score=confidence,
        source_type="PATTERN",
        reasoning=reasoning,
        metadata={"question_type": QuestionType.YES_NO},
    )


def contextual_suggestion(question: Question) -> AnswerSuggestion:
    text = question.question_text.lower()
    answer, confidence = _GENERIC_ANSWER, _GENERIC_CONFIDENCE
    for triggers, template in _CONTEXTUAL_TEMPLATES:
        if any(trigger in text for trigger in triggers):
            answer, confidence = template, _CONTEXTUAL_CONFIDENCE
            break
    return AnswerSuggestion(
        suggested_answer=answer,
        confidence_score=confidence,
        source_type="AI_GENERATED",
        reasoning="Contextual response from question topic",
        metadata={
            "keywords": list(question.keywords or []),
            "risk_level": question.risk_level,
            "question_type": question.question_type,
        },
    )


def _answer_from_evidence(evidence: Evidence, question_text: str) -> str:
    text = question_text.lower()
    if "policy" in text or "procedure" in text:
        return (
            f"We have implemented {evidence.title} which addresses this requirement. "
            "The policy is documented and regularly reviewed."
        )
    return (
        "We have implemented appropriate controls and maintain evidence of compliance. "
        f"Our {evidence.title} addresses this requirement."
    )


class AnswerSuggestionEngine:
    """Ranks candidate answers for a question.

    Args:
        question_repo: QuestionRepository.
        library_repo: AnswerLibraryRepository.
        evidence_repo: EvidenceRepository.
    """

    def __init__(self, question_repo: Any, library_repo: Any, evidence_repo: Any) -> None:
        self._question_repo = question_repo
        self._library_repo = library_repo
        self._evidence_repo = evidence_repo

    async def suggest(self, question_id: uuid.UUID, tenant: TenantContext) -> list[AnswerSuggestion]:
        """Top five suggestions for a question, most confident first.

        Raises:
            NotFoundError: If the question does not exist in the tenant.
        """
        question = await self._question_repo.get_by_id(question_id, tenant.tenant_id)
        suggestions: list[AnswerSuggestion] = []
        suggestions.extend(await self._library_suggestions(question, tenant))
        suggestions.extend(await self._evidence_suggestions(question, tenant))
        suggestions.extend(await self._pattern_suggestions(question, tenant))
        suggestions.append(contextual_suggestion(question))

        suggestions.sort(key=lambda s: s.confidence_score, reverse=True)
        logger.debug(
            "Answer suggestions generated",
            question_id=str(question_id),
            candidates=len(suggestions),
        )
        return suggestions[:MAX_SUGGESTIONS]

    async def _library_suggestions(self, question: Question, tenant: TenantContext) -> list[AnswerSuggestion]:
        keywords = list(question.keywords or []) or extract_keywords(question.question_text)
        if not keywords:
            return []
        keyword_set = set(keywords)

        matches = []
        for entry in await self._library_repo.list_active(tenant.tenant_id):
            matched = [phrase for phrase in entry.key_phrases or [] if phrase.lower() in keyword_set]
            if matched:
                matches.append((entry, matched))

        suggestions = []
        for entry, matched in matches[:_LIBRARY_CANDIDATES]:
            confidence = library_confidence(len(matched), len(keywords), entry.confidence_score)
            if confidence <= LIBRARY_MIN_CONFIDENCE:
                continue
            suggestions.append(
                AnswerSuggestion(
                    suggested_answer=entry.standard_answer,
                    confidence_score=round(confidence, 2),
                    source_type="LIBRARY",
                    source_id=entry.id,
                    evidence_ids=list(entry.evidence_references or []),
                    reasoning=f"Matched {len(matched)} keywords: {', '.join(matched)}",
                    metadata={"category": entry.category, "usage_count": entry.usage_count},
                )
            )
        return suggestions

    async def _evidence_suggestions(self, question: Question, tenant: TenantContext) -> list[AnswerSuggestion]:
        control_ids = [uuid.UUID(str(cid)) for cid in question.control_mapping or []]
        if not control_ids:
            return []

        now = utcnow()
        pairs = await self._evidence_repo.approved_for_controls(tenant.tenant_id, control_ids)
        suggestions = []
        for evidence, matched in pairs[:_EVIDENCE_CANDIDATES]:
            confidence = evidence_confidence(matched, len(control_ids), evidence.updated_at, now)
            if confidence <= EVIDENCE_MIN_CONFIDENCE:
                continue
            suggestions.append(
                AnswerSuggestion(
                    suggested_answer=_answer_from_evidence(evidence, question.question_text),
                    confidence_score=round(confidence, 2),
                    source_type="EVIDENCE",
                    source_id=evidence.id,
                    evidence_ids=[str(evidence.id)],
                    reasoning=f"Evidence supports {matched} of {len(control_ids)} mapped controls",
                    metadata={"evidence_title": evidence.title, "evidence_type": evidence.evidence_type},
                )
            )
        return suggestions

    async def _pattern_suggestions(self, question: Question, tenant: TenantContext) -> list[AnswerSuggestion]:
        suggestions = []
        if question.question_type == QuestionType.YES_NO:
            suggestions.append(yes_no_suggestion(question.question_text))

        text = question.question_text.lower()
        for triggers, answer, confidence in _TOPIC_PATTERNS:
            if not any(trigger in text for trigger in triggers):
                continue
            evidence = await self._evidence_repo.search_approved(tenant.tenant_id, triggers, limit=1)
            if not evidence:
                continue
            suggestions.append(
                AnswerSuggestion(
                    suggested_answer=answer,
                    confidence_score=confidence,
                    source_type="PATTERN",
                    evidence_ids=[str(e.id) for e in evidence],
                    reasoning=f"Approved evidence on {triggers[0]} exists",
                    metadata={"topic": triggers[0]},
                )
            )
        return suggestions
