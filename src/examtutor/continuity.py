"""
Conversational continuity for the exam chat.

Tracks the last question discussed in a viewing session and decides whether a
new message starts a new question, continues the previous one, or needs the
student to say which question they mean.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from .config import TUTOR_TIMEZONE
from .observability import get_logger
from .prompts import (
    CLARIFY_DEFAULT_MESSAGE,
    CLARIFY_EXPLAIN_MESSAGE,
    CLARIFY_HELP_MESSAGE,
    CLARIFY_SOLVE_MESSAGE,
)

logger = get_logger(__name__)

KIND_NEW = "new"
KIND_FOLLOWUP = "followup"
KIND_AMBIGUOUS_FIRST = "ambiguous-first"
KIND_AMBIGUOUS_CLARIFY = "ambiguous-clarify"

HELP_KEYWORDS = ("help", "stuck", "don't understand")
EXPLAIN_KEYWORDS = ("explain", "how", "what")
SOLVE_KEYWORDS = ("solve", "answer", "solution")

# Checked in order; the first family with a hit picks the template.
CLARIFICATION_FAMILIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (HELP_KEYWORDS, CLARIFY_HELP_MESSAGE),
    (EXPLAIN_KEYWORDS, CLARIFY_EXPLAIN_MESSAGE),
    (SOLVE_KEYWORDS, CLARIFY_SOLVE_MESSAGE),
)


@dataclass(frozen=True)
class Classification:
    kind: str
    question_ref: str | None = None

    @property
    def resolvable(self) -> bool:
        return self.kind in (KIND_NEW, KIND_FOLLOWUP)


def classify(extracted_ref: str | None, last_ref: str | None, *, is_first_message: bool) -> Classification:
    if extracted_ref:
        if extracted_ref == last_ref:
            return Classification(KIND_FOLLOWUP, extracted_ref)
        return Classification(KIND_NEW, extracted_ref)
    if last_ref:
        return Classification(KIND_FOLLOWUP, last_ref)
    if is_first_message:
        return Classification(KIND_AMBIGUOUS_FIRST)
    return Classification(KIND_AMBIGUOUS_CLARIFY)


def clarification_message(user_input: str) -> str:
    # Plain substring containment: "not helpful" still picks the help template.
    lowered = str(user_input or "").lower()
    for keywords, template in CLARIFICATION_FAMILIES:
        if any(keyword in lowered for keyword in keywords):
            return template
    return CLARIFY_DEFAULT_MESSAGE


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_new_day(last_message_at: Any, *, now: datetime | None = None, tz: tzinfo | None = None) -> bool:
    """True when the last stored message was written on an earlier calendar day than `now`."""
    last = _parse_timestamp(last_message_at)
    if last is None:
        return False
    zone = tz or ZoneInfo(TUTOR_TIMEZONE)
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return last.astimezone(zone).date() != current.astimezone(zone).date()


class ContinuityTracker:
    """Holds the last resolved question for one viewing session."""

    def __init__(self, last_ref: str | None = None):
        self.last_ref = last_ref

    def classify(self, extracted_ref: str | None, *, is_first_message: bool) -> Classification:
        result = classify(extracted_ref, self.last_ref, is_first_message=is_first_message)
        logger.info(
            "continuity_classified",
            extracted_ref=extracted_ref,
            last_ref=self.last_ref,
            kind=result.kind,
            resolved_ref=result.question_ref,
        )
        return result

    def commit(self, classification: Classification):
        """Moves the last question after a successful new/follow-up turn."""
        if classification.resolvable and classification.question_ref:
            self.last_ref = classification.question_ref

    def reseed(self, messages: Iterable[dict[str, Any]]) -> str | None:
        """Restores last_ref from the newest message that carries a question reference."""
        last = None
        for message in messages:
            ref = message.get("question_ref")
            if ref:
                last = str(ref)
        self.last_ref = last
        return last
