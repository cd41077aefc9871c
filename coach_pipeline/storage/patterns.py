from __future__ import annotations

from datetime import datetime
from typing import List, Sequence

from ..common import format_timestamp, utc_now
from ..models import PatternSummary
from .utils import _clamp, _json_dumps, _json_loads, _sqlite_connection


class CoachPatternsMixin:
    async def upsert_pattern_summary(
        self,
        user_id: str,
        theme: str,
        synthesis: str,
        *,
        domains: Sequence[str] = (),
        occurrence_count: int = 1,
        confidence: float = 0.0,
        last_seen_at: datetime | None = None,
    ) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO pattern_summaries (
                    user_id, theme, synthesis, domains_json, occurrence_count, confidence, last_seen_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, theme) DO UPDATE SET
                    synthesis = excluded.synthesis,
                    domains_json = excluded.domains_json,
                    occurrence_count = excluded.occurrence_count,
                    confidence = excluded.confidence,
                    last_seen_at = excluded.last_seen_at
                """,
                (
                    user_id,
                    theme.strip(),
                    synthesis.strip(),
                    _json_dumps(sorted({str(item) for item in domains})),
                    max(0, int(occurrence_count)),
                    _clamp(float(confidence), 0.0, 1.0),
                    format_timestamp(last_seen_at or utc_now()),
                ),
            )
            await db.commit()

    async def get_pattern_summaries(
        self,
        user_id: str,
        *,
        min_confidence: float = 0.85,
        min_occurrences: int = 3,
        limit: int = 3,
    ) -> List[PatternSummary]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT theme, synthesis, domains_json, occurrence_count, confidence
                FROM pattern_summaries
                WHERE user_id = ? AND confidence >= ? AND occurrence_count >= ?
                ORDER BY confidence DESC, occurrence_count DESC, theme ASC
                LIMIT ?
                """,
                (user_id, float(min_confidence), int(min_occurrences), max(0, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            PatternSummary.from_row(
                {
                    "theme": row["theme"],
                    "synthesis": row["synthesis"],
                    "domains": _json_loads(row["domains_json"], []),
                    "occurrence_count": row["occurrence_count"],
                    "confidence": row["confidence"],
                }
            )
            for row in rows
        ]
