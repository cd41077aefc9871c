from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, List

import aiosqlite

from ..common import format_timestamp, parse_timestamp, utc_now
from ..models import ConversationState, ConversationType
from .utils import _clamp, _sqlite_connection


def _row_to_state(row: aiosqlite.Row) -> ConversationState:
    return ConversationState(
        conversation_id=str(row["conversation_id"]),
        user_id=str(row["user_id"]),
        established_domain=row["established_domain"],
        domain_confidence=float(row["domain_confidence"] or 0.0),
        turn_count=int(row["turn_count"] or 0),
        type=ConversationType.parse(row["type"]),
        title=row["title"],
    )


class CoachConversationsMixin:
    async def create_conversation(
        self,
        user_id: str,
        *,
        conversation_id: str | None = None,
        title: str | None = None,
        conversation_type: ConversationType = ConversationType.COACHING,
    ) -> ConversationState:
        conversation_id = conversation_id or str(uuid.uuid4())
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO conversations (conversation_id, user_id, title, type, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, user_id, title, conversation_type.value, format_timestamp(utc_now())),
            )
            await db.commit()
        state = await self.get_conversation(conversation_id)
        if state is None or state.user_id != user_id:
            raise RuntimeError(f"Conversation {conversation_id} belongs to another user")
        return state

    async def get_conversation(self, conversation_id: str) -> ConversationState | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_state(row) if row is not None else None

    async def update_conversation_state(
        self,
        conversation_id: str,
        *,
        established_domain: str | None,
        domain_confidence: float,
        turn_count: int,
        last_message_at: datetime,
    ) -> None:
        """Write absolute values so a retried turn leaves the same row behind."""
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                UPDATE conversations
                SET established_domain = ?,
                    domain_confidence = ?,
                    turn_count = ?,
                    last_message_at = ?
                WHERE conversation_id = ?
                """,
                (
                    established_domain,
                    _clamp(float(domain_confidence), 0.0, 1.0),
                    max(0, int(turn_count)),
                    format_timestamp(last_message_at),
                    conversation_id,
                ),
            )
            await db.commit()

    async def set_conversation_title_if_empty(self, conversation_id: str, title: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                "UPDATE conversations SET title = ? WHERE conversation_id = ? AND (title IS NULL OR title = '')",
                (title, conversation_id),
            )
            await db.commit()

    async def list_recent_conversations(
        self,
        user_id: str,
        *,
        exclude_conversation_id: str | None = None,
        limit: int = 5,
    ) -> List[Dict[str, object]]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT conversation_id, title, established_domain, last_message_at
                FROM conversations
                WHERE user_id = ?
                  AND conversation_id != ?
                  AND last_message_at IS NOT NULL
                ORDER BY last_message_at DESC
                LIMIT ?
                """,
                (user_id, exclude_conversation_id or "", max(0, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "conversation_id": str(row["conversation_id"]),
                "title": row["title"],
                "domain": row["established_domain"],
                "last_message_at": parse_timestamp(row["last_message_at"]),
            }
            for row in rows
        ]

    async def count_sessions(self, user_id: str) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM conversations WHERE user_id = ? AND turn_count > 0",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def domain_usage(self, user_id: str) -> Dict[str, int]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT established_domain, COUNT(*) AS sessions
                FROM conversations
                WHERE user_id = ? AND turn_count > 0 AND established_domain IS NOT NULL
                GROUP BY established_domain
                """,
                (user_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return {str(row["established_domain"]): int(row["sessions"]) for row in rows}
