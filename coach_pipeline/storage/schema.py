from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_connection


class CoachSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("COACH_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def init(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0

            if version > self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise RuntimeError(
                        "SQLite schema version mismatch detected (database is newer than this build). "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set COACH_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                await self._reset_schema(db)

            await self._create_schema(db)
            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("usage_logs", "pattern_summaries", "messages", "conversations", "profiles"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                values_json TEXT NOT NULL DEFAULT '[]',
                goals_json TEXT NOT NULL DEFAULT '[]',
                situation_json TEXT NOT NULL DEFAULT '{}',
                insights_json TEXT NOT NULL DEFAULT '[]',
                coaching_preferences_json TEXT NOT NULL DEFAULT '{}',
                last_reflection_at TEXT,
                discovery_completed_at TEXT,
                discovery_summary TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT,
                type TEXT NOT NULL DEFAULT 'coaching',
                established_domain TEXT,
                domain_confidence REAL NOT NULL DEFAULT 0,
                turn_count INTEGER NOT NULL DEFAULT 0,
                last_message_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user_recent
                ON conversations(user_id, last_message_at);

            CREATE TABLE IF NOT EXISTS messages (
                message_pk INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL REFERENCES conversations(conversation_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                token_count INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, message_pk);

            CREATE TABLE IF NOT EXISTS pattern_summaries (
                user_id TEXT NOT NULL,
                theme TEXT NOT NULL,
                synthesis TEXT NOT NULL DEFAULT '',
                domains_json TEXT NOT NULL DEFAULT '[]',
                occurrence_count INTEGER NOT NULL DEFAULT 0,
                confidence REAL NOT NULL DEFAULT 0,
                last_seen_at TEXT,
                PRIMARY KEY (user_id, theme)
            );

            CREATE TABLE IF NOT EXISTS usage_logs (
                log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                conversation_id TEXT,
                message_id TEXT,
                model TEXT NOT NULL,
                tokens_in INTEGER NOT NULL DEFAULT 0,
                tokens_out INTEGER NOT NULL DEFAULT 0,
                cost_usd REAL NOT NULL DEFAULT 0,
                crisis_detected INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            """
        )
