"""Shared fixtures: a seeded SQLite store, local object storage, generated PDFs and a scripted AI client."""
import asyncio
from datetime import datetime, timezone
from pathlib import Path

import fitz

from examtutor.ai_client import AIInvocationError, AIResponse
from examtutor.data_store import SqliteDataStore
from examtutor.storage_provider import LocalFileStorageProvider

PAPER_ID = "paper-1"
PNG_BYTES = b"\x89PNG\r\n\x1a\nquestion-image"


def make_pdf(pages: int = 2, label: str = "Page") -> bytes:
    doc = fitz.open()
    try:
        for index in range(pages):
            page = doc.new_page()
            page.insert_text((72, 72), f"{label} {index + 1}")
        return doc.tobytes()
    finally:
        doc.close()


def make_backends(tmp_dir: str):
    root = Path(tmp_dir)
    store = SqliteDataStore(root / "tutor.sqlite")
    storage = LocalFileStorageProvider(root / "objects", secret="test-secret")
    storage.ensure_ready()
    return store, storage


def seed_paper(store, storage, *, paper_id=PAPER_ID, title="Maths Paper 1", with_pdf=True, grade="g10", subject="maths"):
    record = {
        "id": paper_id,
        "title": title,
        "grade_level_id": grade,
        "subject_id": subject,
        "pdf_path": None,
        "marking_scheme_pdf_path": None,
    }
    if with_pdf:
        record["pdf_path"] = f"{paper_id}/exam.pdf"
        record["marking_scheme_pdf_path"] = f"{paper_id}/scheme.pdf"
        storage.put_bytes("exam-papers", record["pdf_path"], make_pdf(3, "Exam"))
        storage.put_bytes("marking-schemes", record["marking_scheme_pdf_path"], make_pdf(2, "Scheme"))
    return store._insert_sync("exam_papers", record)


def seed_question(store, storage, number, *, paper_id=PAPER_ID, images=1, text=None, scheme=None):
    paths = []
    for index in range(images):
        path = f"{paper_id}/questions/q{number}_{index}.png"
        storage.put_bytes("exam-papers", path, PNG_BYTES + bytes([index]))
        paths.append(path)
    return store._insert_sync(
        "exam_questions",
        {
            "exam_paper_id": paper_id,
            "question_number": str(number),
            "ocr_text": text if text is not None else f"Question {number} text",
            "marking_scheme_text": scheme if scheme is not None else f"Scheme for {number}",
            "image_paths": paths,
        },
    )


def seed_subscription(store, user_id, tier="free", **fields):
    record = {
        "user_id": user_id,
        "tier_id": f"tier_{tier}",
        "status": "active",
        "tokens_used_current_period": 0,
        "papers_accessed_current_period": 0,
        "accessed_paper_ids": [],
        "selected_subject_ids": [],
    }
    record.update(fields)
    return store._insert_sync("user_subscriptions", record)


def subscription_row(store, user_id):
    rows = store._query_many_sync("user_subscriptions", {"user_id": user_id}, None, 1)
    return rows[0] if rows else None


def seed_history(store, user_id, paper_id, messages, *, created_at="2020-01-01T10:00:00.000+00:00"):
    """messages: (role, content, question_ref) tuples stored in order."""
    conversation = store._insert_sync(
        "conversations",
        {"user_id": user_id, "exam_paper_id": paper_id, "title": "old", "created_at": created_at},
    )
    for seq, (role, content, ref) in enumerate(messages, start=1):
        store._insert_sync(
            "conversation_messages",
            {
                "conversation_id": conversation["id"],
                "seq": seq,
                "role": role,
                "content": content,
                "question_number": ref,
                "has_images": False,
                "created_at": created_at,
            },
        )
    return conversation


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class ScriptedAIClient:
    """Returns queued responses (or raises queued exceptions) and records every payload."""

    def __init__(self, *responses, default_answer="Here is how to approach it."):
        self.responses = list(responses)
        self.default_answer = default_answer
        self.payloads = []
        self.called = asyncio.Event()
        self.release: asyncio.Event | None = None
        self.delay_s = 0.0
        self.closed = False

    def hold(self):
        """Blocks invocations until `release` is set."""
        self.release = asyncio.Event()
        return self.release

    async def invoke(self, payload):
        self.payloads.append(payload)
        self.called.set()
        if self.release is not None:
            await self.release.wait()
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        item = self.responses.pop(0) if self.responses else AIResponse(answer=self.default_answer)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            return AIResponse.model_validate(item)
        return item

    async def aclose(self):
        self.closed = True

    @property
    def wire_payloads(self):
        return [p.to_wire() for p in self.payloads]


def ai_failure(message="Failed to get response from AI (HTTP 500)"):
    return AIInvocationError(message)
