from __future__ import annotations

from typing import Dict, List

from ..common import format_timestamp, utc_now
from .utils import _sqlite_connection


class CoachUsageMixin:
    async def log_usage(
        self,
        user_id: str,
        *,
        conversation_id: str | None,
        message_id: str | None,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float,
        crisis_detected: bool = False,
    ) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO usage_logs (
                    user_id, conversation_id, message_id, model,
                    tokens_in, tokens_out, cost_usd, crisis_detected, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    conversation_id,
                    message_id,
                    model,
                    max(0, int(tokens_in)),
                    max(0, int(tokens_out)),
                    max(0.0, float(cost_usd)),
                    1 if crisis_detected else 0,
                    format_timestamp(utc_now()),
                ),
            )
            await db.commit()

    async def list_usage(self, user_id: str) -> List[Dict[str, object]]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT conversation_id, message_id, model, tokens_in, tokens_out, cost_usd, crisis_detected
                FROM usage_logs
                WHERE user_id = ?
                ORDER BY log_id ASC
                """,
                (user_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "conversation_id": row["conversation_id"],
                "message_id": row["message_id"],
                "model": row["model"],
                "tokens_in": int(row["tokens_in"]),
                "tokens_out": int(row["tokens_out"]),
                "cost_usd": float(row["cost_usd"]),
                "crisis_detected": bool(row["crisis_detected"]),
            }
            for row in rows
        ]
