from __future__ import annotations

import uuid
from datetime import datetime
from typing import List

from ..common import format_timestamp, parse_timestamp, utc_now
from ..models import ChatMessage
from .utils import _sqlite_connection


class CoachMessagesMixin:
    async def save_message(
        self,
        conversation_id: str,
        user_id: str,
        role: str,
        content: str,
        *,
        message_id: str | None = None,
        token_count: int | None = None,
        created_at: datetime | None = None,
    ) -> str:
        """Upsert by message id; replaying the same id rewrites the same row."""
        message_id = message_id or str(uuid.uuid4())
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO messages (message_id, conversation_id, user_id, role, content, token_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    content = excluded.content,
                    token_count = excluded.token_count
                """,
                (
                    message_id,
                    conversation_id,
                    user_id,
                    role,
                    content,
                    token_count,
                    format_timestamp(created_at or utc_now()),
                ),
            )
            await db.commit()
        return message_id

    async def get_recent_messages(self, conversation_id: str, limit: int) -> List[ChatMessage]:
        """Latest ``limit`` messages of a conversation, oldest first."""
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT role, content, created_at
                FROM (
                    SELECT message_pk, role, content, created_at
                    FROM messages
                    WHERE conversation_id = ?
                    ORDER BY message_pk DESC
                    LIMIT ?
                )
                ORDER BY message_pk ASC
                """,
                (conversation_id, max(0, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            ChatMessage(role=str(row["role"]), content=str(row["content"]), created_at=parse_timestamp(row["created_at"]))
            for row in rows
        ]

    async def count_user_messages(self, conversation_id: str) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ? AND role = 'user'",
                (conversation_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
