"""Read an uploaded questionnaire CSV into questions.

Two layouts are understood. A file whose first row has a ``question`` (or
``question_text``) column is read as a table, with optional ``section``,
``question_type`` and ``risk_level`` columns. Anything else is read the way
customers usually send questionnaires: a title near the top, a
``Client | <name>`` style row, section headings, and one question per row
in the first column, sometimes followed by its answer options.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Any

from complianceos.common.errors import ValidationError
from complianceos.core.models import Criticality, QuestionType

TITLE_SCAN_ROWS = 5
REQUESTER_SCAN_ROWS = 10
MIN_TITLE_LENGTH = 6
MAX_TITLE_LENGTH = 99
MAX_HEADING_LENGTH = 49

_WORD_RE = re.compile(r"[a-z]+")

_QUESTION_COLUMNS = ("question", "question_text")
_QUESTION_VERBS = frozenset({"describe", "explain", "list", "provide"})
_HEADING_WORDS = frozenset({"section", "chapter", "part"})
_REQUESTER_LABELS = frozenset({"client", "company", "organization", "organisation", "requester"})
_UPLOAD_WORDS = frozenset({"file", "upload", "attach", "attachment"})
_CHOICE_WORDS = frozenset({"select", "choose"})

# Checked in order; the first level with a matching word wins.
_RISK_WORDS: tuple[tuple[str, frozenset[str]], ...] = (
    (Criticality.CRITICAL, frozenset({"critical", "essential", "vital"})),
    (Criticality.HIGH, frozenset({"high", "important", "sensitive"})),
    (Criticality.MEDIUM, frozenset({"medium", "moderate"})),
    (Criticality.LOW, frozenset({"low", "basic"})),
)


@dataclass
class ParsedQuestionnaire:
    """What could be read from a file. Questions use the create_questionnaire shape."""

    title: str | None = None
    requester_name: str | None = None
    questions: list[dict[str, Any]] = field(default_factory=list)


def _words(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def is_question(text: str) -> bool:
    return "?" in text or bool(_words(text) & _QUESTION_VERBS)


def is_heading(text: str) -> bool:
    """A short line without sentence punctuation, or one naming a section."""
    if _words(text) & _HEADING_WORDS:
        return True
    return len(text) <= MAX_HEADING_LENGTH and "?" not in text and "." not in text


def infer_question_type(text: str, options: list[str] | None = None) -> str:
    """Guess the answer format from the wording and any option cells beside it."""
    words = _words(text)
    if {"yes", "no"} <= words:
        return QuestionType.YES_NO
    if words & _UPLOAD_WORDS:
        return QuestionType.FILE_UPLOAD
    if words & _CHOICE_WORDS or len([o for o in options or [] if o]) > 1:
        return QuestionType.MULTIPLE_CHOICE
    return QuestionType.TEXT


def infer_risk_level(text: str) -> str | None:
    words = _words(text)
    for level, markers in _RISK_WORDS:
        if words & markers:
            return level
    return None


def _read_rows(csv_text: str) -> list[list[str]]:
    try:
        raw = list(csv.reader(io.StringIO(csv_text.lstrip("\ufeff"))))
    except csv.Error as exc:
        raise ValidationError(message=f"Unreadable CSV: {exc}", field="file") from exc
    rows = [[cell.strip() for cell in row] for row in raw]
    return [row for row in rows if any(row)]


def _parse_table(header: list[str], rows: list[list[str]]) -> ParsedQuestionnaire:
    columns = {name: index for index, name in enumerate(header) if name}
    text_column = next(columns[name] for name in _QUESTION_COLUMNS if name in columns)

    def cell(row: list[str], name: str) -> str:
        index = columns.get(name)
        return row[index] if index is not None and index < len(row) else ""

    questions: list[dict[str, Any]] = []
    # Row 1 is the header.
    for row_number, row in enumerate(rows, start=2):
        text = row[text_column] if text_column < len(row) else ""
        if not text:
            continue
        declared_risk = cell(row, "risk_level").upper()
        if declared_risk and declared_risk not in Criticality.__members__:
            raise ValidationError(message=f"Row {row_number}: unknown risk level '{declared_risk}'", field="risk_level")
        questions.append(
            {
                "question_text": text,
                "question_type": (cell(row, "question_type") or cell(row, "type")).upper() or infer_question_type(text),
                "section": cell(row, "section") or None,
                "risk_level": declared_risk or infer_risk_level(text),
            }
        )
    return ParsedQuestionnaire(questions=questions)


def _parse_free_form(rows: list[list[str]]) -> ParsedQuestionnaire:
    parsed = ParsedQuestionnaire()
    consumed: set[int] = set()

    for index, row in enumerate(rows[:TITLE_SCAN_ROWS]):
        first = row[0]
        if MIN_TITLE_LENGTH <= len(first) <= MAX_TITLE_LENGTH and not is_question(first):
            parsed.title = first
            consumed.add(index)
            break

    for index, row in enumerate(rows[:REQUESTER_SCAN_ROWS]):
        first = row[0]
        if index in consumed or is_question(first) or len(row) < 2 or not row[1]:
            continue
        if _words(first) & _REQUESTER_LABELS:
            parsed.requester_name = row[1]
            consumed.add(index)
            break

    section: str | None = None
    for index, row in enumerate(rows):
        first = row[0]
        if index in consumed or not first:
            continue
        if is_question(first):
            parsed.questions.append(
                {
                    "question_text": first,
                    "question_type": infer_question_type(first, row[1:]),
                    "section": section,
                    "risk_level": infer_risk_level(first),
                }
            )
        elif is_heading(first):
            section = first
    return parsed


def parse_csv(csv_text: str) -> ParsedQuestionnaire:
    """Read questions (and, for free-form files, a title and requester) from CSV text.

    Args:
        csv_text: The uploaded file decoded as text.

    Returns:
        The ParsedQuestionnaire. It may hold no questions.

    Raises:
        ValidationError: When the file is empty, unreadable or declares an unknown risk level.
    """
    rows = _read_rows(csv_text)
    if not rows:
        raise ValidationError(message="The uploaded file is empty", field="file")
    header = [cell.lower() for cell in rows[0]]
    if any(name in header for name in _QUESTION_COLUMNS):
        return _parse_table(header, rows[1:])
    return _parse_free_form(rows)
