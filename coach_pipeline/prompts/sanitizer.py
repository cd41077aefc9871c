from __future__ import annotations

import re

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_RESERVED_TAG_RE = re.compile(
    r"\[(/?)(MEMORY|PATTERN|DISCOVERY_COMPLETE|SESSION_COMPLETE|REFLECTION_ACCEPTED|REFLECTION_DECLINED|CRISIS_ACK)\b([^\]]*)\]",
    re.IGNORECASE,
)
_ROLE_PREFIX_RE = re.compile(r"^(\s*)(system|assistant|user)\s*:", re.IGNORECASE | re.MULTILINE)
_TRUNCATED_SUFFIX = " [truncated]"


def sanitize_untrusted_prompt_text(text: str | None, max_length: int = 1200) -> str:
    """Neutralize role spoofing, control tags and fenced blocks in user-derived text."""
    if not text:
        return ""

    cleaned = re.sub(r"\r\n?", "\n", text)
    cleaned = _CONTROL_CHARS_RE.sub(" ", cleaned)
    cleaned = cleaned.replace("```", "'''")
    cleaned = _ROLE_PREFIX_RE.sub(r"\1\2 (quoted):", cleaned)
    cleaned = _RESERVED_TAG_RE.sub(r"(\1\2\3)", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    if len(cleaned) > max_length:
        safe_length = max(max_length - len(_TRUNCATED_SUFFIX), 0)
        cleaned = f"{cleaned[:safe_length].rstrip()}{_TRUNCATED_SUFFIX}"
    return cleaned
