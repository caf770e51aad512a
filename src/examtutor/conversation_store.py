"""
Durable conversation transcripts, one conversation per (user, exam paper).

Messages are ordered by a per-conversation sequence number assigned here, so a
user turn always sorts before the assistant turn that answers it.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from .config import PERSIST_BACKOFF_S, PERSIST_MAX_ATTEMPTS
from .data_store import DataStore, DataStoreError
from .observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _message_from_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "role": row.get("role"),
        "content": row.get("content") or "",
        "question_ref": row.get("question_number"),
        "seq": row.get("seq"),
        "created_at": row.get("created_at"),
    }


class ConversationStore:
    def __init__(
        self,
        store: DataStore,
        *,
        max_attempts: int = PERSIST_MAX_ATTEMPTS,
        backoff_s: float = PERSIST_BACKOFF_S,
    ):
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_s = max(0.0, float(backoff_s))
        self._next_seq: dict[str, int] = {}
        self._seq_lock = asyncio.Lock()

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except DataStoreError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff_s * (2 ** (attempt - 1))
                logger.warning(
                    "conversation_store_retry",
                    operation=operation,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
        raise DataStoreError(f"{operation} failed")  # pragma: no cover

    async def find_conversation(self, user_id: str, paper_id: str) -> dict[str, Any] | None:
        return await self.store.query_one(
            "conversations",
            {"user_id": user_id, "exam_paper_id": paper_id},
        )

    async def ensure_conversation(self, user_id: str, paper_id: str, title: str = "") -> str:
        existing = await self._with_retry("find_conversation", lambda: self.find_conversation(user_id, paper_id))
        if existing:
            return str(existing["id"])
        try:
            created = await self._with_retry(
                "create_conversation",
                lambda: self.store.insert(
                    "conversations",
                    {
                        "user_id": user_id,
                        "exam_paper_id": paper_id,
                        "title": title,
                        "created_at": _utcnow_iso(),
                    },
                ),
            )
        except DataStoreError:
            # Another session may have created it between the lookup and the insert.
            existing = await self.find_conversation(user_id, paper_id)
            if existing:
                return str(existing["id"])
            raise
        logger.info("conversation_created", conversation_id=created["id"], user_id=user_id, paper_id=paper_id)
        return str(created["id"])

    async def _allocate_seq(self, conversation_id: str) -> int:
        async with self._seq_lock:
            if conversation_id not in self._next_seq:
                rows = await self.store.query_many(
                    "conversation_messages",
                    {"conversation_id": conversation_id},
                    order=("seq", False),
                    limit=1,
                )
                self._next_seq[conversation_id] = int(rows[0]["seq"]) + 1 if rows else 1
            seq = self._next_seq[conversation_id]
            self._next_seq[conversation_id] = seq + 1
            return seq

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        question_ref: str | None = None,
    ) -> dict[str, Any]:
        if role not in {"user", "assistant"}:
            raise ValueError(f"invalid role: {role!r}")
        seq = await self._allocate_seq(conversation_id)
        record = {
            "conversation_id": conversation_id,
            "seq": seq,
            "role": role,
            "content": content,
            "question_number": question_ref,
            "has_images": False,
            "created_at": _utcnow_iso(),
        }
        return await self._with_retry("append_message", lambda: self.store.insert("conversation_messages", record))

    async def append_turn(
        self,
        *,
        user_id: str,
        paper_id: str,
        user_text: str,
        assistant_text: str,
        question_ref: str | None,
        conversation_id: str | None = None,
        title: str = "",
    ) -> str:
        """Stores a user/assistant pair, creating the conversation on first use; returns its id."""
        if not conversation_id:
            conversation_id = await self.ensure_conversation(user_id, paper_id, title)
        await self.append_message(conversation_id, "user", user_text, question_ref)
        await self.append_message(conversation_id, "assistant", assistant_text, question_ref)
        return conversation_id

    async def load_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        rows = await self.store.query_many(
            "conversation_messages",
            {"conversation_id": conversation_id},
            order=("seq", True),
        )
        return [_message_from_row(row) for row in rows]

    async def count_messages(self, conversation_id: str | None) -> int:
        if not conversation_id:
            return 0
        rows = await self.store.query_many("conversation_messages", {"conversation_id": conversation_id})
        return len(rows)
