"""
Request/response data store used by the tutoring core.

The core only sees the `DataStore` protocol: single-table equality queries,
patches, inserts and named procedures. `SqliteDataStore` is the local backend
used in development and tests; `SupabaseDataStore` talks to the hosted tables.
"""
from __future__ import annotations

import asyncio
import json
import re
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from .config import DB_PATH
from .db_migrations import TUTOR_MIGRATIONS, apply_sqlite_migrations
from .observability import get_logger

logger = get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

# Columns holding JSON arrays in the SQLite backend (native arrays in Postgres).
JSON_COLUMNS: dict[str, frozenset[str]] = {
    "user_subscriptions": frozenset({"accessed_paper_ids", "selected_subject_ids"}),
    "exam_questions": frozenset({"image_urls", "image_paths"}),
}


class DataStoreError(RuntimeError):
    """Raised when the data store rejects or fails a request."""


class DataStore(Protocol):
    async def query_one(self, table: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        ...

    async def query_many(
        self,
        table: str,
        filters: dict[str, Any],
        order: tuple[str, bool] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def update(self, table: str, filters: dict[str, Any], patch: dict[str, Any]) -> int:
        ...

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        ...

    async def call_procedure(self, name: str, args: dict[str, Any]) -> Any:
        ...


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(str(name or "")):
        raise DataStoreError(f"invalid identifier: {name!r}")
    return name


def _json_loads_or_default(raw: Any, default: Any):
    if raw is None or raw == "":
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


class SqliteDataStore:
    """SQLite-backed implementation of the data store protocol."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            pass
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="tutor_store", migrations=TUTOR_MIGRATIONS)
        self._procedures = {
            "can_user_use_chat_for_paper": self._can_user_use_chat_for_paper,
        }

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise DataStoreError("data store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise DataStoreError(str(exc)) from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    # --- row encoding -------------------------------------------------------

    @staticmethod
    def _encode(table: str, record: dict[str, Any]) -> dict[str, Any]:
        json_cols = JSON_COLUMNS.get(table, frozenset())
        encoded = {}
        for key, value in record.items():
            _check_identifier(key)
            if key in json_cols and not isinstance(value, str):
                value = json.dumps(list(value or []), ensure_ascii=True)
            elif isinstance(value, bool):
                value = int(value)
            encoded[key] = value
        return encoded

    @staticmethod
    def _decode(table: str, row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        for key in JSON_COLUMNS.get(table, frozenset()):
            if key in item:
                item[key] = _json_loads_or_default(item[key], [])
        return item

    @staticmethod
    def _where(table: str, filters: dict[str, Any]) -> tuple[str, list[Any]]:
        if not filters:
            return "", []
        clauses = []
        params: list[Any] = []
        for key, value in SqliteDataStore._encode(table, filters).items():
            if value is None:
                clauses.append(f"{key} IS NULL")
            else:
                clauses.append(f"{key} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    # --- synchronous operations --------------------------------------------

    def _query_many_sync(self, table, filters, order=None, limit=None) -> list[dict[str, Any]]:
        table = _check_identifier(table)
        where, params = self._where(table, filters)
        sql = f"SELECT * FROM {table}{where}"
        if order:
            column, ascending = order
            sql += f" ORDER BY {_check_identifier(column)} {'ASC' if ascending else 'DESC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, int(limit)))
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._decode(table, row) for row in rows]

    def _update_sync(self, table, filters, patch) -> int:
        table = _check_identifier(table)
        if not patch:
            return 0
        encoded = self._encode(table, patch)
        assignments = ", ".join(f"{key} = ?" for key in encoded)
        where, params = self._where(table, filters)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments}{where}",
                [*encoded.values(), *params],
            )
        return int(cursor.rowcount or 0)

    def _insert_sync(self, table, record) -> dict[str, Any]:
        table = _check_identifier(table)
        row = dict(record)
        row.setdefault("id", uuid.uuid4().hex)
        encoded = self._encode(table, row)
        columns = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                list(encoded.values()),
            )
            stored = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row["id"],)).fetchone()
        return self._decode(table, stored)

    def _can_user_use_chat_for_paper(self, args: dict[str, Any]) -> bool:
        subscription = self._active_subscription_with_tier(str(args.get("p_user_id") or ""))
        if subscription is None:
            return False
        tier_name = subscription["tier_name"]
        if tier_name == "pro":
            return True

        papers = self._query_many_sync("exam_papers", {"id": args.get("p_paper_id")}, limit=1)
        if not papers:
            return False
        paper = papers[0]

        if tier_name == "free":
            token_limit = subscription["token_limit_override"]
            if token_limit is None:
                token_limit = subscription["token_limit"]
            return token_limit is None or subscription["tokens_used_current_period"] < token_limit

        if tier_name in {"student", "student_lite"}:
            selected_grade = subscription.get("selected_grade_id")
            if selected_grade is not None and paper.get("grade_level_id") != selected_grade:
                return False
            selected_subjects = subscription.get("selected_subject_ids") or []
            if selected_subjects and paper.get("subject_id") not in selected_subjects:
                return False
            return True
        return False

    def _active_subscription_with_tier(self, user_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT us.*, st.name AS tier_name, st.token_limit, st.papers_limit
                FROM user_subscriptions AS us
                JOIN subscription_tiers AS st ON st.id = us.tier_id
                WHERE us.user_id = ? AND us.status = 'active'
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._decode("user_subscriptions", row)

    # --- protocol -----------------------------------------------------------

    async def query_one(self, table: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        rows = await asyncio.to_thread(self._query_many_sync, table, filters, None, 1)
        return rows[0] if rows else None

    async def query_many(
        self,
        table: str,
        filters: dict[str, Any],
        order: tuple[str, bool] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query_many_sync, table, filters, order, limit)

    async def update(self, table: str, filters: dict[str, Any], patch: dict[str, Any]) -> int:
        return await asyncio.to_thread(self._update_sync, table, filters, patch)

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._insert_sync, table, record)

    async def call_procedure(self, name: str, args: dict[str, Any]) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise DataStoreError(f"unknown procedure: {name}")
        return await asyncio.to_thread(procedure, dict(args or {}))


class SupabaseDataStore:
    """Hosted backend: PostgREST tables and RPC functions through supabase-py."""

    def __init__(self, client: Any = None, *, url: str | None = None, key: str | None = None):
        if client is None:
            from supabase import create_client

            client = create_client(url, key)
        self._client = client

    def _execute(self, builder) -> Any:
        try:
            return builder.execute()
        except Exception as exc:
            raise DataStoreError(str(exc)) from exc

    def _filtered(self, builder, filters: dict[str, Any]):
        for key, value in (filters or {}).items():
            builder = builder.is_(key, "null") if value is None else builder.eq(key, value)
        return builder

    def _query_many_sync(self, table, filters, order=None, limit=None) -> list[dict[str, Any]]:
        builder = self._filtered(self._client.table(table).select("*"), filters)
        if order:
            column, ascending = order
            builder = builder.order(column, desc=not ascending)
        if limit is not None:
            builder = builder.limit(max(1, int(limit)))
        return list(self._execute(builder).data or [])

    def _update_sync(self, table, filters, patch) -> int:
        builder = self._filtered(self._client.table(table).update(patch), filters)
        return len(self._execute(builder).data or [])

    def _insert_sync(self, table, record) -> dict[str, Any]:
        data = self._execute(self._client.table(table).insert(record)).data or []
        if not data:
            raise DataStoreError(f"insert into {table} returned no row")
        return data[0]

    def _rpc_sync(self, name, args) -> Any:
        return self._execute(self._client.rpc(name, args)).data

    async def query_one(self, table: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        rows = await asyncio.to_thread(self._query_many_sync, table, filters, None, 1)
        return rows[0] if rows else None

    async def query_many(
        self,
        table: str,
        filters: dict[str, Any],
        order: tuple[str, bool] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query_many_sync, table, filters, order, limit)

    async def update(self, table: str, filters: dict[str, Any], patch: dict[str, Any]) -> int:
        return await asyncio.to_thread(self._update_sync, table, filters, patch)

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._insert_sync, table, record)

    async def call_procedure(self, name: str, args: dict[str, Any]) -> Any:
        return await asyncio.to_thread(self._rpc_sync, name, args)
