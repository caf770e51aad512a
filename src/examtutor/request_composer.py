"""
Builds the JSON payload sent to the remote exam-assistant function.

Field names are a wire contract with the remote function and must not change.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .config import AI_PROVIDER
from .context_cache import ContextBundle
from .continuity import KIND_FOLLOWUP, KIND_NEW


@dataclass(frozen=True)
class FullDocument:
    """Every page of the exam paper and its marking scheme, base64 encoded."""
    exam_images: tuple[str, ...] = ()
    marking_scheme_images: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.exam_images


# Mode specific fields are omitted when unset; identity fields are always sent, null included.
MODE_FIELDS = ("questionNumber", "markingSchemeText", "questionText", "markingSchemeImages")


class RequestPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    question: str
    provider: str
    exam_paper_id: str = Field(alias="examPaperId")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    user_id: str | None = Field(default=None, alias="userId")
    last_question_number: str | None = Field(default=None, alias="lastQuestionNumber")
    optimized_mode: bool = Field(alias="optimizedMode")
    question_number: str | None = Field(default=None, alias="questionNumber")
    exam_paper_images: list[str] = Field(default_factory=list, alias="examPaperImages")
    marking_scheme_text: str | None = Field(default=None, alias="markingSchemeText")
    question_text: str | None = Field(default=None, alias="questionText")
    marking_scheme_images: list[str] | None = Field(default=None, alias="markingSchemeImages")

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        for key in MODE_FIELDS:
            if payload.get(key) is None:
                payload.pop(key, None)
        return payload

    @property
    def image_count(self) -> int:
        return len(self.exam_paper_images) + len(self.marking_scheme_images or [])


def compose(
    question_ref: str | None,
    kind: str,
    bundle: ContextBundle | None,
    full_document: FullDocument | None,
    *,
    question: str,
    paper_id: str,
    user_id: str | None = None,
    conversation_id: str | None = None,
    last_question_number: str | None = None,
    provider: str = AI_PROVIDER,
) -> RequestPayload:
    """
    Optimized payload when the question's bundle is available, full document otherwise.
    `last_question_number` is the session's last question before this message.
    """
    if kind not in (KIND_NEW, KIND_FOLLOWUP):
        raise ValueError(f"cannot compose a request for a {kind!r} message")

    common = {
        "question": question,
        "provider": provider,
        "exam_paper_id": paper_id,
        "conversation_id": conversation_id,
        "user_id": user_id,
        "last_question_number": last_question_number,
    }
    if bundle is not None and question_ref:
        return RequestPayload(
            **common,
            optimized_mode=True,
            question_number=question_ref,
            exam_paper_images=list(bundle.images),
            marking_scheme_text=bundle.marking_scheme_text,
            question_text=bundle.question_text,
        )

    document = full_document or FullDocument()
    return RequestPayload(
        **common,
        optimized_mode=False,
        exam_paper_images=list(document.exam_images),
        marking_scheme_images=list(document.marking_scheme_images),
    )
