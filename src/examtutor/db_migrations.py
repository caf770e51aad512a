"""
SQLite migration runner with schema version tracking, plus the tutoring schema.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .observability import get_logger

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
) -> list[int]:
    """Applies ordered migrations for a component and returns the versions applied now."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )

    rows = conn.execute(
        "SELECT version FROM schema_migrations WHERE component = ?",
        (component,),
    ).fetchall()
    applied_versions = {int(row[0]) for row in rows}

    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: int(m.version)):
        version = int(migration.version)
        if version in applied_versions:
            continue

        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if callable(migration.runner):
            migration.runner(conn)

        conn.execute(
            """
            INSERT INTO schema_migrations (component, version, name, applied_at)
            VALUES (?, ?, ?, ?)
            """,
            (component, version, migration.name, _utcnow_iso()),
        )
        newly_applied.append(version)
        logger.info(
            "db_migration_applied",
            component=component,
            version=version,
            name=migration.name,
        )
    return newly_applied


def _seed_default_tiers(conn: sqlite3.Connection):
    # token_limit / papers_limit NULL means unbounded.
    tiers = (
        ("tier_free", "free", 50000, 2),
        ("tier_student_lite", "student_lite", 250000, None),
        ("tier_student", "student", 500000, None),
        ("tier_pro", "pro", None, None),
    )
    conn.executemany(
        """
        INSERT OR IGNORE INTO subscription_tiers (id, name, token_limit, papers_limit)
        VALUES (?, ?, ?, ?)
        """,
        tiers,
    )


TUTOR_MIGRATIONS: list[SqliteMigration] = [
    SqliteMigration(
        version=1,
        name="create_subscription_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS subscription_tiers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                token_limit INTEGER,
                papers_limit INTEGER
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS user_subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                tier_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                tokens_used_current_period INTEGER NOT NULL DEFAULT 0,
                papers_accessed_current_period INTEGER NOT NULL DEFAULT 0,
                accessed_paper_ids TEXT NOT NULL DEFAULT '[]',
                token_limit_override INTEGER,
                selected_grade_id TEXT,
                selected_subject_ids TEXT NOT NULL DEFAULT '[]',
                FOREIGN KEY(tier_id) REFERENCES subscription_tiers(id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status ON user_subscriptions(user_id, status)",
        ),
        runner=_seed_default_tiers,
    ),
    SqliteMigration(
        version=2,
        name="create_exam_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS exam_papers (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                grade_level_id TEXT,
                subject_id TEXT,
                pdf_path TEXT,
                marking_scheme_pdf_path TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS exam_questions (
                id TEXT PRIMARY KEY,
                exam_paper_id TEXT NOT NULL,
                question_number TEXT NOT NULL,
                ocr_text TEXT NOT NULL DEFAULT '',
                marking_scheme_text TEXT NOT NULL DEFAULT '',
                image_url TEXT,
                image_urls TEXT NOT NULL DEFAULT '[]',
                image_paths TEXT NOT NULL DEFAULT '[]',
                UNIQUE(exam_paper_id, question_number),
                FOREIGN KEY(exam_paper_id) REFERENCES exam_papers(id)
            )
            """,
        ),
    ),
    SqliteMigration(
        version=3,
        name="create_conversation_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                exam_paper_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                UNIQUE(user_id, exam_paper_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS conversation_messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                question_number TEXT,
                has_images INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE(conversation_id, seq),
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq ON conversation_messages(conversation_id, seq)",
        ),
    ),
]
