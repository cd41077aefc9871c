from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Protocol, Tuple, TypeVar

from ..config import Settings
from ..models import ChatMessage, CoachingContext, PastConversation, PatternSummary, UserProfile
from .style import format_style_instructions, resolve_style_preferences
from .summarizer import summarize_conversation

logger = logging.getLogger("coach_pipeline.context")

T = TypeVar("T")


async def _ready(value: T) -> T:
    return value


class ContextStore(Protocol):
    async def get_profile(self, user_id: str) -> UserProfile | None: ...

    async def get_recent_messages(self, conversation_id: str, limit: int) -> List[ChatMessage]: ...

    async def list_recent_conversations(
        self,
        user_id: str,
        *,
        exclude_conversation_id: str | None = None,
        limit: int = 5,
    ) -> List[Dict[str, Any]]: ...

    async def get_pattern_summaries(self, user_id: str) -> List[PatternSummary]: ...

    async def count_sessions(self, user_id: str) -> int: ...

    async def domain_usage(self, user_id: str) -> Dict[str, int]: ...


class ContextAssembler:
    """Gathers the personalization inputs of a turn concurrently.

    Each sub-fetch has its own error boundary and the whole join is bounded by one
    deadline; a sub-fetch that fails or runs late contributes its zero value and is
    listed in ``CoachingContext.degraded``.
    """

    def __init__(
        self,
        store: ContextStore,
        *,
        deadline_seconds: float = 0.2,
        max_recent_messages: int = 20,
        history_conversation_limit: int = 5,
        history_messages_per_conversation: int = 3,
        style_min_sessions: int = 5,
        pattern_min_sessions: int = 5,
    ) -> None:
        self.store = store
        self.deadline_seconds = deadline_seconds
        self.max_recent_messages = max_recent_messages
        self.history_conversation_limit = history_conversation_limit
        self.history_messages_per_conversation = history_messages_per_conversation
        self.style_min_sessions = style_min_sessions
        self.pattern_min_sessions = pattern_min_sessions

    @classmethod
    def from_settings(cls, store: ContextStore, settings: Settings) -> "ContextAssembler":
        return cls(
            store,
            deadline_seconds=settings.context_deadline_ms / 1000,
            max_recent_messages=settings.max_recent_messages,
            history_conversation_limit=settings.history_conversation_limit,
            history_messages_per_conversation=settings.history_messages_per_conversation,
            style_min_sessions=settings.style_min_sessions,
            pattern_min_sessions=settings.pattern_min_sessions,
        )

    async def _guarded(self, name: str, awaitable: Awaitable[T], zero: T) -> Tuple[T, bool]:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.deadline_seconds), True
        except asyncio.TimeoutError:
            logger.warning("Context sub-fetch '%s' missed the %.0fms deadline", name, self.deadline_seconds * 1000)
        except Exception as exc:
            logger.warning("Context sub-fetch '%s' failed: %s", name, exc)
        return zero, False

    async def _history(self, user_id: str, conversation_id: str) -> List[PastConversation]:
        if self.history_conversation_limit <= 0:
            return []
        rows = await self.store.list_recent_conversations(
            user_id,
            exclude_conversation_id=conversation_id,
            limit=self.history_conversation_limit,
        )
        message_sets = await asyncio.gather(
            *(
                self.store.get_recent_messages(str(row["conversation_id"]), self.history_messages_per_conversation)
                for row in rows
            )
        )
        history: List[PastConversation] = []
        for row, messages in zip(rows, message_sets):
            title = row.get("title") or None
            domain = row.get("domain") or None
            history.append(
                PastConversation(
                    conversation_id=str(row["conversation_id"]),
                    title=title,
                    domain=domain,
                    summary=summarize_conversation(messages, title, domain),
                    last_message_at=row.get("last_message_at"),
                )
            )
        return history

    async def assemble(
        self,
        user_id: str,
        conversation_id: str,
        *,
        domain: str | None = None,
        recent_messages: List[ChatMessage] | None = None,
    ) -> CoachingContext:
        """Context for one turn. Pass ``recent_messages`` when the caller already holds the window."""
        recent_fetch: Awaitable[List[ChatMessage]] = (
            _ready(list(recent_messages))
            if recent_messages is not None
            else self.store.get_recent_messages(conversation_id, self.max_recent_messages)
        )
        (
            (profile, profile_ok),
            (recent, recent_ok),
            (history, history_ok),
            (patterns, patterns_ok),
            (session_count, sessions_ok),
            (usage, usage_ok),
        ) = await asyncio.gather(
            self._guarded("profile", self.store.get_profile(user_id), None),
            self._guarded("recent_messages", recent_fetch, []),
            self._guarded("history", self._history(user_id, conversation_id), []),
            self._guarded("patterns", self.store.get_pattern_summaries(user_id), []),
            self._guarded("session_count", self.store.count_sessions(user_id), 0),
            self._guarded("domain_usage", self.store.domain_usage(user_id), {}),
        )

        degraded = tuple(
            name
            for name, ok in (
                ("profile", profile_ok),
                ("recent_messages", recent_ok),
                ("history", history_ok),
                ("patterns", patterns_ok),
                ("session_count", sessions_ok),
                ("domain_usage", usage_ok),
            )
            if not ok
        )

        if session_count < self.pattern_min_sessions:
            patterns = []

        style_instructions = ""
        if profile is not None:
            try:
                prefs = resolve_style_preferences(
                    profile.coaching_preferences,
                    domain=domain,
                    session_count=session_count,
                    min_sessions=self.style_min_sessions,
                )
                style_instructions = format_style_instructions(prefs)
            except Exception as exc:
                logger.warning("Coaching style resolution failed: %s", exc)
                degraded = (*degraded, "style")

        if degraded:
            logger.info("Context assembled with degraded parts: %s", ", ".join(degraded))
        return CoachingContext(
            profile=profile,
            recent_messages=list(recent),
            history=list(history),
            patterns=list(patterns),
            style_instructions=style_instructions,
            session_count=int(session_count),
            domain_usage=dict(usage),
            degraded=degraded,
        )
