"""
FastAPI service layer for the exam tutor.

One `ChatSession` per (viewer, exam paper) is kept in an LRU so the question
cache, quota ledger and continuity state survive between requests. A viewer is
the `X-User-Id` header, or `X-Session-Id` for anonymous students; requests with
neither get a session of their own that is not kept.
Exposes chat, transcript, cancel, quota and PDF URL endpoints plus GET /metrics.

Run with:
    uvicorn examtutor.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .ai_client import HttpAIClient
from .chat_session import OUTCOME_BUSY, ChatSession, PaperNotFoundError
from .config import (
    AI_API_KEY,
    AI_ENDPOINT_URL,
    DB_PATH,
    SESSION_CACHE_SIZE,
    SIGNED_URL_TTL_S,
    STORAGE_DIR,
    SUPABASE_KEY,
    SUPABASE_URL,
    USE_SUPABASE,
)
from .data_store import DataStoreError, SqliteDataStore, SupabaseDataStore
from .metrics import metrics_collector
from .observability import get_logger
from .storage_provider import LocalFileStorageProvider, ObjectStorageError, SupabaseStorageProvider

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="Student message")


class MessageModel(BaseModel):
    role: str
    content: str
    question_ref: str | None = None


class ChatResponse(BaseModel):
    outcome: str
    reply: MessageModel
    kind: str | None = None
    question_ref: str | None = None
    optimized_mode: bool | None = None
    remaining: dict[str, Any] | None = None
    locked: bool = False
    latency_ms: float


class ConversationResponse(BaseModel):
    conversation_id: str | None = None
    last_question_ref: str | None = None
    messages: list[MessageModel]


class QuotaResponse(BaseModel):
    allowed: bool
    reason: str | None = None
    remaining: dict[str, Any] = Field(default_factory=dict)
    token_limit: int | None = None
    papers_limit: int | None = None
    locked: bool = False


class PdfUrlResponse(BaseModel):
    url: str
    expires_in: int


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}


class _SessionCache:
    """Thread-safe LRU of open chat sessions keyed by (viewer, paper_id)."""

    def __init__(self, max_size: int = SESSION_CACHE_SIZE):
        self._sessions: OrderedDict[tuple[str, str], ChatSession] = OrderedDict()
        self._max = max_size
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, key: tuple[str, str]) -> ChatSession | None:
        with self._lock:
            if key in self._sessions:
                self._sessions.move_to_end(key)
                return self._sessions[key]
        return None

    def put(self, key: tuple[str, str], session: ChatSession) -> None:
        with self._lock:
            if key in self._sessions:
                self._sessions.move_to_end(key)
            else:
                self._evict_idle()
            self._sessions[key] = session

    def _evict_idle(self) -> None:
        # Sessions with a turn in flight are skipped; the cache may overshoot until they finish.
        while len(self._sessions) >= self._max:
            idle = next((k for k, s in self._sessions.items() if not s.busy), None)
            if idle is None:
                logger.warning("session_cache_full", size=len(self._sessions), max_size=self._max)
                return
            del self._sessions[idle]

    def clear(self) -> None:
        with self._lock:
            for session in self._sessions.values():
                session.cancel()
            self._sessions.clear()


_sessions = _SessionCache()


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

def _build_backends() -> tuple[Any, Any]:
    if USE_SUPABASE:
        from supabase import create_client

        client = create_client(SUPABASE_URL, SUPABASE_KEY)
        return SupabaseDataStore(client), SupabaseStorageProvider(client)
    storage = LocalFileStorageProvider(STORAGE_DIR)
    storage.ensure_ready()
    return SqliteDataStore(DB_PATH), storage


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the data store, object storage and AI client once at startup."""
    store, storage = _build_backends()
    ai_client = HttpAIClient(AI_ENDPOINT_URL, AI_API_KEY)
    _state["store"] = store
    _state["storage"] = storage
    _state["ai_client"] = ai_client
    _state["open_lock"] = asyncio.Lock()
    logger.info("api_started", backend="supabase" if USE_SUPABASE else "sqlite")

    yield  # Application is running.

    # Shutdown: release resources.
    _sessions.clear()
    await ai_client.aclose()
    close = getattr(store, "close", None)
    if callable(close):
        close()
    _state.clear()


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Exam Tutor API",
    description="Question-aware tutoring chat over past exam papers",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

def _viewer_key(user_id: str | None, session_id: str | None) -> str | None:
    """Signed-in users are keyed by user id, anonymous viewers by their own session id."""
    if user_id:
        return f"user:{user_id}"
    if session_id:
        return f"anon:{session_id}"
    return None


async def _open_session(paper_id: str, user_id: str | None) -> ChatSession:
    session = ChatSession(
        store=_state["store"],
        storage=_state["storage"],
        ai_client=_state["ai_client"],
        paper_id=paper_id,
        user_id=user_id or None,
    )
    try:
        await session.open()
    except PaperNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Exam paper {paper_id} not found.") from exc
    except DataStoreError as exc:
        logger.error("session_open_failed", paper_id=paper_id, user_id=user_id, error=str(exc))
        raise HTTPException(status_code=503, detail="Exam data is unavailable.") from exc
    return session


async def _get_session(paper_id: str, user_id: str | None, session_id: str | None = None) -> ChatSession:
    if _state.get("store") is None:
        raise HTTPException(status_code=503, detail="Service is not initialized.")
    viewer = _viewer_key(user_id, session_id)
    if viewer is None:
        # No way to tell anonymous viewers apart: each request gets its own session.
        return await _open_session(paper_id, None)

    key = (viewer, paper_id)
    session = _sessions.get(key)
    if session is not None:
        return session

    async with _state["open_lock"]:
        session = _sessions.get(key)
        if session is not None:
            return session
        session = await _open_session(paper_id, user_id)
        _sessions.put(key, session)
        return session


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/papers/{paper_id}/chat", response_model=ChatResponse)
async def chat_endpoint(
    paper_id: str,
    request: ChatRequest,
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
):
    """Run one student message through the session's pipeline."""
    session = await _get_session(paper_id, x_user_id, x_session_id)
    start = time.perf_counter()
    try:
        result = await session.submit(request.message)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if result.outcome == OUTCOME_BUSY:
        raise HTTPException(status_code=409, detail=result.reply.content)

    access = result.access
    return ChatResponse(
        outcome=result.outcome,
        reply=MessageModel(**result.reply.as_dict()),
        kind=result.kind,
        question_ref=result.question_ref,
        optimized_mode=result.optimized_mode,
        remaining=access.remaining if access is not None else None,
        locked=session.ledger.locked,
        latency_ms=round((time.perf_counter() - start) * 1000.0, 2),
    )


@app.get("/papers/{paper_id}/conversation", response_model=ConversationResponse)
async def conversation_endpoint(
    paper_id: str,
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
):
    session = await _get_session(paper_id, x_user_id, x_session_id)
    return ConversationResponse(
        conversation_id=session.state.conversation_id,
        last_question_ref=session.last_ref,
        messages=[MessageModel(**m.as_dict()) for m in session.state.messages],
    )


@app.post("/papers/{paper_id}/cancel")
async def cancel_endpoint(
    paper_id: str,
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
):
    viewer = _viewer_key(x_user_id, x_session_id)
    session = _sessions.get((viewer, paper_id)) if viewer is not None else None
    return {"cancelled": bool(session is not None and session.cancel())}


@app.get("/papers/{paper_id}/quota", response_model=QuotaResponse)
async def quota_endpoint(
    paper_id: str,
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
):
    """Current access decision for this paper; nothing is recorded."""
    session = await _get_session(paper_id, x_user_id, x_session_id)
    try:
        decision = await session.ledger.check_access(paper_id)
    except DataStoreError as exc:
        raise HTTPException(status_code=503, detail="Subscription data is unavailable.") from exc
    return QuotaResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        remaining=decision.remaining,
        token_limit=decision.token_limit,
        papers_limit=decision.papers_limit,
        locked=session.ledger.locked,
    )


@app.get("/papers/{paper_id}/pdf-url", response_model=PdfUrlResponse)
async def pdf_url_endpoint(
    paper_id: str,
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
):
    session = await _get_session(paper_id, x_user_id, x_session_id)
    try:
        url = await session.signed_pdf_url(SIGNED_URL_TTL_S)
    except ObjectStorageError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return PdfUrlResponse(url=url, expires_in=SIGNED_URL_TTL_S)


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return metrics_collector.get_summary()
