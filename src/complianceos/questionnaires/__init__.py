"""Security questionnaire automation: questions, answers, suggestions and the answer library."""

from complianceos.questionnaires.keywords import extract_keywords
from complianceos.questionnaires.library import AnswerLibraryService
from complianceos.questionnaires.service import QuestionnaireService
from complianceos.questionnaires.suggestions import AnswerSuggestionEngine

__all__ = [
    "AnswerLibraryService",
    "AnswerSuggestionEngine",
    "QuestionnaireService",
    "extract_keywords",
]
