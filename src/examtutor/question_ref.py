"""Question number extraction from free-text student messages."""
from __future__ import annotations

import re

# "Q5b", "question 12a", "help with q 3"
EXPLICIT_QUESTION_RE = re.compile(r"(?:question|q)\s*(\d+)[a-z]*", re.IGNORECASE)
# "5 please help", "2a"
LEADING_NUMBER_RE = re.compile(r"^(\d+)[a-z]*")
MAX_REGEX_INPUT_CHARS = 2048


def extract_question_reference(text: str | None) -> str | None:
    """
    Returns the question number referenced by `text`, or None.

    The explicit "question"/"q" form wins over a bare leading number, and only
    the digit group is kept ("Q5b" -> "5").
    """
    if not text:
        return None
    normalized = str(text)[:MAX_REGEX_INPUT_CHARS].lower().strip()
    if not normalized:
        return None

    match = EXPLICIT_QUESTION_RE.search(normalized)
    if match:
        return match.group(1)

    match = LEADING_NUMBER_RE.match(normalized)
    if match:
        return match.group(1)
    return None
