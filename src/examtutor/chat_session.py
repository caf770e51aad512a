"""
Message pipeline for one student viewing one exam paper.

A `ChatSession` holds the per-viewer state for one paper:
the transcript, the question cache, the quota ledger and the continuity
tracker. `submit()` runs one message through

    access check -> extract -> classify -> resolve context -> compose
    -> record paper access -> AI call -> transcript, persistence, quota refresh

and always returns a `TurnResult`; failures become assistant messages.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from .ai_client import AIClient, AIInvocationError
from .config import AI_TIMEOUT_S, EXAM_PAPER_BUCKET, MARKING_SCHEME_BUCKET, SIGNED_URL_TTL_S
from .context_cache import ContextCache
from .continuity import (
    KIND_AMBIGUOUS_CLARIFY,
    KIND_AMBIGUOUS_FIRST,
    Classification,
    ContinuityTracker,
    clarification_message,
    is_new_day,
)
from .conversation_store import ConversationStore
from .data_store import DataStore, DataStoreError
from .metrics import MetricsCollector, metrics_collector
from .observability import get_logger
from .pdf_images import count_pdf_pages_async, render_pdf_pages_async
from .prompts import (
    BUSY_MESSAGE,
    DOCUMENT_UNAVAILABLE_MESSAGE,
    FIRST_QUESTION_CONFIRM_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    WELCOME_BACK_MESSAGE,
    denial_message,
)
from .question_ref import extract_question_reference
from .quota import AccessDecision, QuotaLedger
from .request_composer import FullDocument, RequestPayload, compose
from .storage_provider import ObjectStorageError, ObjectStorageProvider

logger = get_logger(__name__)

OUTCOME_ANSWERED = "answered"
OUTCOME_DENIED = "denied"
OUTCOME_CONFIRM_FIRST = "confirm_first"
OUTCOME_CLARIFY = "clarify"
OUTCOME_QUESTION_NOT_FOUND = "question_not_found"
OUTCOME_DOCUMENT_UNAVAILABLE = "document_unavailable"
OUTCOME_ERROR = "error"
OUTCOME_BUSY = "busy"
OUTCOME_CANCELLED = "cancelled"


class PaperNotFoundError(LookupError):
    pass


@dataclass
class ChatMessage:
    role: str
    content: str
    question_ref: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "question_ref": self.question_ref}


@dataclass
class ConversationState:
    conversation_id: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    # Messages known to exist in durable storage for this conversation.
    persisted_count: int = 0


@dataclass(frozen=True)
class TurnResult:
    outcome: str
    reply: ChatMessage
    kind: str | None = None
    question_ref: str | None = None
    access: AccessDecision | None = None
    optimized_mode: bool | None = None
    ai_called: bool = False
    images_sent: int = 0
    images_available: int = 0


class ChatSession:
    def __init__(
        self,
        *,
        store: DataStore,
        storage: ObjectStorageProvider,
        ai_client: AIClient,
        paper_id: str,
        user_id: str | None,
        conversation_store: ConversationStore | None = None,
        context_cache: ContextCache | None = None,
        ledger: QuotaLedger | None = None,
        tracker: ContinuityTracker | None = None,
        metrics: MetricsCollector | None = None,
        ai_timeout_s: float = AI_TIMEOUT_S,
        exam_bucket: str = EXAM_PAPER_BUCKET,
        marking_scheme_bucket: str = MARKING_SCHEME_BUCKET,
    ):
        self.store = store
        self.storage = storage
        self.ai_client = ai_client
        self.paper_id = str(paper_id)
        self.user_id = user_id
        self.conversations = conversation_store or ConversationStore(store)
        self.cache = context_cache or ContextCache(store, storage, self.paper_id)
        self.ledger = ledger or QuotaLedger(store, user_id)
        self.tracker = tracker or ContinuityTracker()
        self.metrics = metrics or metrics_collector
        self.ai_timeout_s = float(ai_timeout_s)
        self.exam_bucket = exam_bucket
        self.marking_scheme_bucket = marking_scheme_bucket

        self.paper: dict[str, Any] | None = None
        self.state = ConversationState()
        self._full_document: FullDocument | None = None
        self._document_pages: int | None = None
        self._busy = False
        self._inflight: asyncio.Task | None = None
        self._cancel_requested = False

    # --- lifecycle ------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def last_ref(self) -> str | None:
        return self.tracker.last_ref

    async def open(self) -> "ChatSession":
        """Loads the paper, quota counters and any stored conversation for this user."""
        self.paper = await self.store.query_one("exam_papers", {"id": self.paper_id})
        if not self.paper:
            raise PaperNotFoundError(self.paper_id)
        await self.ledger.refresh()
        await self.resume_conversation()
        return self

    async def resume_conversation(self, *, now=None) -> ConversationState:
        if not self.user_id:
            return self.state
        try:
            conversation = await self.conversations.find_conversation(self.user_id, self.paper_id)
            if not conversation:
                return self.state
            stored = await self.conversations.load_messages(str(conversation["id"]))
        except DataStoreError as exc:
            logger.error("conversation_load_failed", user_id=self.user_id, paper_id=self.paper_id, error=str(exc))
            return self.state

        messages = [ChatMessage(m["role"], m["content"], m.get("question_ref")) for m in stored]
        if stored and is_new_day(stored[-1].get("created_at"), now=now):
            messages.append(ChatMessage("assistant", WELCOME_BACK_MESSAGE))
        self.state = ConversationState(
            conversation_id=str(conversation["id"]),
            messages=messages,
            persisted_count=len(stored),
        )
        self.tracker.reseed(stored)
        logger.info(
            "conversation_resumed",
            conversation_id=self.state.conversation_id,
            messages=len(stored),
            last_ref=self.tracker.last_ref,
        )
        return self.state

    def cancel(self) -> bool:
        """Abandons the in-flight message, including pending fetches and persistence writes."""
        task = self._inflight
        if task is None or task.done():
            return False
        self._cancel_requested = True
        self.cache.cancel_pending()
        task.cancel()
        logger.info("chat_turn_cancel_requested", paper_id=self.paper_id, user_id=self.user_id)
        return True

    async def signed_pdf_url(self, ttl_seconds: int = SIGNED_URL_TTL_S) -> str:
        path = (self.paper or {}).get("pdf_path")
        if not path:
            raise ObjectStorageError(f"paper {self.paper_id} has no pdf")
        return await self.storage.get_signed_url(self.exam_bucket, path, ttl_seconds)

    async def full_document(self) -> FullDocument:
        """Renders the whole exam and marking scheme once per session; empty when unavailable."""
        if self._full_document is not None:
            return self._full_document
        paper = self.paper or {}
        exam_images = await self._render(self.exam_bucket, paper.get("pdf_path"))
        scheme_images = await self._render(self.marking_scheme_bucket, paper.get("marking_scheme_pdf_path"))
        document = FullDocument(tuple(exam_images), tuple(scheme_images))
        if not document.is_empty:
            self._full_document = document
        return document

    async def document_page_count(self) -> int:
        """Exam plus marking scheme pages, counted without rasterizing. Cached once known."""
        if self._full_document is not None:
            return len(self._full_document.exam_images) + len(self._full_document.marking_scheme_images)
        if self._document_pages is not None:
            return self._document_pages
        paper = self.paper or {}
        total = 0
        for bucket, path in (
            (self.exam_bucket, paper.get("pdf_path")),
            (self.marking_scheme_bucket, paper.get("marking_scheme_pdf_path")),
        ):
            if not path:
                continue
            try:
                total += await count_pdf_pages_async(await self.storage.download(bucket, path))
            except (ObjectStorageError, RuntimeError, ValueError) as exc:
                logger.warning("document_page_count_failed", bucket=bucket, path=path, error=str(exc))
                return 0
        self._document_pages = total
        return total

    async def _render(self, bucket: str, path: str | None) -> list[str]:
        if not path:
            return []
        try:
            return await render_pdf_pages_async(await self.storage.download(bucket, path))
        except (ObjectStorageError, RuntimeError, ValueError) as exc:
            logger.error("full_document_unavailable", bucket=bucket, path=path, error=str(exc))
            return []

    # --- message pipeline -----------------------------------------------------

    async def submit(self, text: str) -> TurnResult:
        message = str(text or "").strip()
        if not message:
            raise ValueError("message must not be empty")
        if self._busy:
            return TurnResult(OUTCOME_BUSY, ChatMessage("assistant", BUSY_MESSAGE))

        self._busy = True
        self._cancel_requested = False
        started = time.perf_counter()
        self._inflight = asyncio.create_task(self._process(message))
        try:
            result = await self._inflight
        except asyncio.CancelledError:
            if not self._cancel_requested:
                self._inflight.cancel()
                raise
            result = TurnResult(OUTCOME_CANCELLED, ChatMessage("assistant", ""))
            logger.info("chat_turn_cancelled", paper_id=self.paper_id, user_id=self.user_id)
        finally:
            self._busy = False
            self._inflight = None

        self.metrics.record_turn(
            result.outcome,
            (time.perf_counter() - started) * 1000.0,
            ai_called=result.ai_called,
            optimized_mode=result.optimized_mode,
            images_sent=result.images_sent,
            images_available=result.images_available,
        )
        return result

    def _reply(self, content: str, question_ref: str | None = None) -> ChatMessage:
        reply = ChatMessage("assistant", content, question_ref)
        self.state.messages.append(reply)
        return reply

    def _is_first_message(self) -> bool:
        # Durable history counts too, so a reload with an empty view is not a first message.
        if self.state.persisted_count > 0:
            return False
        return sum(1 for m in self.state.messages if m.role == "user") <= 1

    async def _process(self, message: str) -> TurnResult:
        try:
            return await self._run_pipeline(message)
        except Exception:
            logger.exception("chat_turn_failed", paper_id=self.paper_id, user_id=self.user_id)
            return TurnResult(OUTCOME_ERROR, self._reply(GENERIC_ERROR_MESSAGE))

    async def _check_access(self, *, record: bool) -> AccessDecision:
        try:
            if record:
                return await self.ledger.authorize(self.paper_id)
            return await self.ledger.check_access(self.paper_id)
        except DataStoreError as exc:
            logger.error("quota_check_failed", paper_id=self.paper_id, user_id=self.user_id, error=str(exc))
            return AccessDecision(allowed=True)

    async def _run_pipeline(self, message: str) -> TurnResult:
        decision = await self._check_access(record=False)
        if not decision.allowed:
            return TurnResult(OUTCOME_DENIED, self._reply(denial_message(decision)), access=decision)

        self.state.messages.append(ChatMessage("user", message))
        extracted = extract_question_reference(message)
        classification = self.tracker.classify(extracted, is_first_message=self._is_first_message())

        if classification.kind == KIND_AMBIGUOUS_FIRST:
            return TurnResult(OUTCOME_CONFIRM_FIRST, self._reply(FIRST_QUESTION_CONFIRM_MESSAGE), kind=classification.kind)
        if classification.kind == KIND_AMBIGUOUS_CLARIFY:
            return TurnResult(OUTCOME_CLARIFY, self._reply(clarification_message(message)), kind=classification.kind)

        payload = await self._build_payload(message, classification)
        if payload is None:
            return TurnResult(
                OUTCOME_DOCUMENT_UNAVAILABLE,
                self._reply(DOCUMENT_UNAVAILABLE_MESSAGE),
                kind=classification.kind,
                question_ref=classification.question_ref,
            )

        # Paper access is recorded before the request leaves, not after the answer.
        decision = await self._check_access(record=True)
        if not decision.allowed:
            return TurnResult(OUTCOME_DENIED, self._reply(denial_message(decision)), access=decision)

        return await self._invoke(message, classification, payload, decision)

    async def _build_payload(self, message: str, classification: Classification) -> RequestPayload | None:
        bundle = await self.cache.fetch_and_cache(classification.question_ref)
        full_document = None
        if bundle is None:
            full_document = await self.full_document()
            if full_document.is_empty:
                logger.error(
                    "context_unavailable",
                    paper_id=self.paper_id,
                    question_ref=classification.question_ref,
                )
                return None
            logger.warning(
                "context_fallback_full_document",
                paper_id=self.paper_id,
                question_ref=classification.question_ref,
            )
        return compose(
            classification.question_ref,
            classification.kind,
            bundle,
            full_document,
            question=message,
            paper_id=self.paper_id,
            user_id=self.user_id,
            conversation_id=self.state.conversation_id,
            last_question_number=self.tracker.last_ref,
        )

    async def _invoke(
        self,
        message: str,
        classification: Classification,
        payload: RequestPayload,
        decision: AccessDecision,
    ) -> TurnResult:
        ref = classification.question_ref
        images = {
            "images_sent": payload.image_count,
            "images_available": max(payload.image_count, await self.document_page_count()),
        }
        try:
            response = await asyncio.wait_for(self.ai_client.invoke(payload), timeout=self.ai_timeout_s)
        except (AIInvocationError, asyncio.TimeoutError) as exc:
            logger.error(
                "ai_invocation_failed",
                paper_id=self.paper_id,
                question_ref=ref,
                optimized_mode=payload.optimized_mode,
                error=str(exc) or type(exc).__name__,
            )
            return TurnResult(
                OUTCOME_ERROR,
                self._reply(GENERIC_ERROR_MESSAGE),
                kind=classification.kind,
                question_ref=ref,
                access=decision,
                optimized_mode=payload.optimized_mode,
                ai_called=True,
                **images,
            )

        if response.question_not_found:
            logger.info("ai_question_not_found", paper_id=self.paper_id, question_ref=ref)
            await self.ledger.refresh()
            return TurnResult(
                OUTCOME_QUESTION_NOT_FOUND,
                self._reply(response.answer, ref),
                kind=classification.kind,
                question_ref=ref,
                access=decision,
                optimized_mode=payload.optimized_mode,
                ai_called=True,
                **images,
            )

        reply = self._reply(response.answer, ref)
        await self._persist_turn(message, response.answer, ref)
        await self.ledger.refresh()
        self.tracker.commit(classification)
        logger.info(
            "chat_turn_answered",
            paper_id=self.paper_id,
            question_ref=ref,
            kind=classification.kind,
            optimized_mode=payload.optimized_mode,
            images_sent=payload.image_count,
            remote_follow_up=response.is_follow_up,
        )
        return TurnResult(
            OUTCOME_ANSWERED,
            reply,
            kind=classification.kind,
            question_ref=ref,
            access=decision,
            optimized_mode=payload.optimized_mode,
            ai_called=True,
            **images,
        )

    async def _persist_turn(self, user_text: str, assistant_text: str, question_ref: str | None):
        if not self.user_id:
            return
        title = str((self.paper or {}).get("title") or "") or user_text[:50] + ("..." if len(user_text) > 50 else "")
        try:
            conversation_id = await self.conversations.append_turn(
                user_id=self.user_id,
                paper_id=self.paper_id,
                user_text=user_text,
                assistant_text=assistant_text,
                question_ref=question_ref,
                conversation_id=self.state.conversation_id,
                title=title,
            )
        except DataStoreError as exc:
            # The in-memory transcript stays authoritative for this session.
            logger.error(
                "conversation_persist_failed",
                paper_id=self.paper_id,
                user_id=self.user_id,
                conversation_id=self.state.conversation_id,
                error=str(exc),
            )
            return
        self.state.conversation_id = conversation_id
        self.state.persisted_count += 2
