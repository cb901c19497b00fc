"""Keyword extraction for questionnaire questions and library matching."""

import re

MIN_KEYWORD_LENGTH = 4
MAX_KEYWORDS = 10

_WORD_RE = re.compile(r"[a-z]+")

STOP_WORDS: frozenset[str] = frozenset(
    {
        "about", "above", "after", "again", "against", "also", "been", "before", "being", "below",
        "between", "both", "could", "describe", "does", "doing", "during", "each", "either", "ensure",
        "every", "from", "have", "having", "here", "how", "into", "itself", "just", "more", "most",
        "must", "only", "other", "over", "please", "provide", "same", "should", "some", "such",
        "than", "that", "their", "them", "then", "there", "these", "they", "this", "those",
        "through", "under", "until", "very", "what", "when", "where", "whether", "which", "while",
        "will", "with", "within", "would", "your", "yours",
    }
)


def extract_keywords(text: str) -> list[str]:
    """Return up to 10 distinct keywords from `text`, in order of appearance.

    A keyword is a lowercase run of at least four letters that is not a stop word.

    Args:
        text: Question or answer text.

    Returns:
        Deduplicated keywords.
    """
    keywords: list[str] = []
    seen: set[str] = set()
    for word in _WORD_RE.findall(text.lower()):
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
        if len(keywords) == MAX_KEYWORDS:
            break
    return keywords
