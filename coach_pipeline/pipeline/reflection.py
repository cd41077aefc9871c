from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping, Sequence

from ..common import utc_now
from ..models import PastConversation, PatternSummary, ReflectionContext

MIN_SESSIONS_FOR_REFLECTION = 8
MIN_DAYS_BETWEEN_REFLECTIONS = 25


class ReflectionScheduler:
    """Cadence gate for periodic progress reflections.

    Eligibility is a pure predicate. The cooldown only advances when the caller
    records an accepted reflection, so a decline keeps the offer open.
    """

    def __init__(
        self,
        min_sessions: int = MIN_SESSIONS_FOR_REFLECTION,
        cooldown_days: int = MIN_DAYS_BETWEEN_REFLECTIONS,
    ) -> None:
        self.min_sessions = min_sessions
        self.cooldown = timedelta(days=cooldown_days)

    def eligible(self, session_count: int, last_reflection_at: datetime | None, now: datetime | None = None) -> bool:
        if session_count < self.min_sessions:
            return False
        if last_reflection_at is None:
            return True
        return (now or utc_now()) - last_reflection_at >= self.cooldown

    def build_context(
        self,
        *,
        session_count: int,
        last_reflection_at: datetime | None,
        history: Sequence[PastConversation] = (),
        patterns: Sequence[PatternSummary] = (),
        domain_usage: Mapping[str, int] | None = None,
        suppressed: bool = False,
        now: datetime | None = None,
    ) -> ReflectionContext:
        offer = not suppressed and self.eligible(session_count, last_reflection_at, now)
        previous_topic = history[0].summary if history and not suppressed else None
        return ReflectionContext(
            session_count=session_count,
            last_reflection_at=last_reflection_at,
            pattern_summary="; ".join(item.synthesis for item in patterns[:2] if item.synthesis),
            recent_themes=tuple(item.theme for item in patterns if item.theme),
            domain_usage=dict(domain_usage or {}),
            previous_unresolved_topic=previous_topic,
            offer_reflection=offer,
        )
