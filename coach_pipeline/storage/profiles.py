from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from ..common import format_timestamp, parse_timestamp
from ..models import UserProfile
from .utils import _json_dumps, _json_loads, _sqlite_connection


class CoachProfilesMixin:
    async def get_profile(self, user_id: str) -> UserProfile | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        situation = _json_loads(row["situation_json"], {})
        insights = _json_loads(row["insights_json"], [])
        return UserProfile(
            user_id=user_id,
            values=[str(item) for item in _json_loads(row["values_json"], []) if str(item).strip()],
            goals=[str(item) for item in _json_loads(row["goals_json"], []) if str(item).strip()],
            situation={str(key): str(value) for key, value in situation.items() if value},
            insights=[item for item in insights if isinstance(item, dict)],
            coaching_preferences=_json_loads(row["coaching_preferences_json"], {}),
            last_reflection_at=parse_timestamp(row["last_reflection_at"]),
            discovery_completed_at=parse_timestamp(row["discovery_completed_at"]),
            discovery_summary=row["discovery_summary"],
        )

    async def upsert_profile(
        self,
        user_id: str,
        *,
        values: List[str] | None = None,
        goals: List[str] | None = None,
        situation: Dict[str, str] | None = None,
        insights: List[Dict[str, str]] | None = None,
        coaching_preferences: Dict[str, Any] | None = None,
    ) -> None:
        """Insert the profile or overwrite only the fields that were passed."""
        fields = {
            "values_json": values,
            "goals_json": goals,
            "situation_json": situation,
            "insights_json": insights,
            "coaching_preferences_json": coaching_preferences,
        }
        provided = {column: _json_dumps(value) for column, value in fields.items() if value is not None}
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("INSERT OR IGNORE INTO profiles (user_id) VALUES (?)", (user_id,))
            if provided:
                assignments = ", ".join(f"{column} = ?" for column in provided)
                await db.execute(
                    f"UPDATE profiles SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
                    (*provided.values(), user_id),
                )
            await db.commit()

    async def set_last_reflection_at(self, user_id: str, reflected_at: datetime) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO profiles (user_id, last_reflection_at)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_reflection_at = excluded.last_reflection_at,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, format_timestamp(reflected_at)),
            )
            await db.commit()

    async def mark_discovery_complete(self, user_id: str, completed_at: datetime, summary: str | None) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO profiles (user_id, discovery_completed_at, discovery_summary)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    discovery_completed_at = excluded.discovery_completed_at,
                    discovery_summary = COALESCE(excluded.discovery_summary, profiles.discovery_summary),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, format_timestamp(completed_at), summary),
            )
            await db.commit()
