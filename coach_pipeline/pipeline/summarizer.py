from __future__ import annotations

from typing import Sequence

from ..models import ChatMessage

SUMMARY_MAX_CHARS = 80


def summarize_conversation(
    messages: Sequence[ChatMessage],
    title: str | None = None,
    domain: str | None = None,
    max_chars: int = SUMMARY_MAX_CHARS,
) -> str:
    """One-line topic of a prior conversation without an LLM call.

    ``messages`` are chronological; the latest user message names the topic,
    falling back to the title and then a generic label.
    """
    last_user = next((item.content.strip() for item in reversed(messages) if item.role == "user" and item.content.strip()), "")
    prefix = f"{domain[:1].upper()}{domain[1:]}: " if domain else ""
    topic = " ".join((last_user or (title or "").strip() or "General coaching conversation").split())
    summary = prefix + topic

    if len(summary) > max_chars:
        cut = summary[: max_chars - 3]
        last_space = cut.rfind(" ")
        summary = (cut[:last_space] if last_space > max_chars // 2 else cut) + "..."
    return summary
