from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from ..models import ControlTag, TagKind, TokenEvent

logger = logging.getLogger("coach_pipeline.stream")

TAG_NAMES: Dict[str, TagKind] = {
    "MEMORY": TagKind.MEMORY,
    "PATTERN": TagKind.PATTERN_INSIGHT,
    "REFLECTION_ACCEPTED": TagKind.REFLECTION_ACCEPTED,
    "REFLECTION_DECLINED": TagKind.REFLECTION_DECLINED,
    "SESSION_COMPLETE": TagKind.SESSION_COMPLETE,
    "DISCOVERY_COMPLETE": TagKind.SESSION_COMPLETE,
    "CRISIS_ACK": TagKind.CRISIS_ACK,
}
MAX_PAYLOAD_CHARS = 512
MAX_PENDING_CHARS = 1 + max(len(name) for name in TAG_NAMES) + 1 + MAX_PAYLOAD_CHARS + 1

_TAG_RE = re.compile(
    r"\[(" + "|".join(sorted(TAG_NAMES, key=len, reverse=True)) + r")(?::([^\]\n]{0,%d}))?\]" % MAX_PAYLOAD_CHARS,
    re.IGNORECASE | re.ASCII,
)


def _visible_replacement(kind: TagKind, payload: str | None) -> str:
    if kind.inline:
        return (payload or "").strip()
    return ""


def strip_control_tags(text: str) -> str:
    """Visible form of a complete generated text: every well-formed control tag removed."""
    return _TAG_RE.sub(
        lambda match: _visible_replacement(TAG_NAMES[match.group(1).upper()], match.group(2)),
        text,
    )


def find_control_tags(text: str) -> List[ControlTag]:
    return [
        ControlTag(
            kind=TAG_NAMES[match.group(1).upper()],
            payload=match.group(2).strip() if match.group(2) is not None else None,
            span=match.span(),
        )
        for match in _TAG_RE.finditer(text)
    ]


class _Match(Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    NONE = "none"


class ScannerState(Enum):
    IDLE = "idle"
    PENDING_OPEN = "pending_open"
    EMITTING = "emitting"


@dataclass(slots=True)
class ScanResult:
    text: str
    tags: List[ControlTag] = field(default_factory=list)


def _is_name_char(ch: str) -> bool:
    return ch == "_" or ("a" <= ch <= "z") or ("A" <= ch <= "Z")


def _match_at(buffer: str, start: int) -> Tuple[_Match, int, TagKind | None, str | None]:
    """Try to read one control tag at ``buffer[start] == '['``.

    Returns the outcome, the index just past the tag, the tag kind and its raw payload.
    PARTIAL means the buffer ends before the tag can be confirmed or rejected.
    """
    pos = start + 1
    end = len(buffer)
    while pos < end and _is_name_char(buffer[pos]):
        pos += 1
    name = buffer[start + 1 : pos].upper()

    if pos == end:
        if any(candidate.startswith(name) for candidate in TAG_NAMES):
            return _Match.PARTIAL, pos, None, None
        return _Match.NONE, start + 1, None, None

    kind = TAG_NAMES.get(name)
    if kind is None:
        return _Match.NONE, start + 1, None, None

    delimiter = buffer[pos]
    if delimiter == "]":
        return _Match.COMPLETE, pos + 1, kind, None
    if delimiter != ":":
        return _Match.NONE, start + 1, None, None

    payload_start = pos + 1
    limit = payload_start + MAX_PAYLOAD_CHARS
    cursor = payload_start
    while cursor < end:
        ch = buffer[cursor]
        if ch == "]":
            return _Match.COMPLETE, cursor + 1, kind, buffer[payload_start:cursor]
        if ch == "\n" or cursor >= limit:
            return _Match.NONE, start + 1, None, None
        cursor += 1
    return _Match.PARTIAL, cursor, None, None


class TagScanner:
    """Chunk-boundary-safe control tag extractor.

    Text is released as soon as it is known not to belong to a tag. From the first
    ``[`` that could still open a tag the scanner holds everything back
    (``PENDING_OPEN``) until the tag closes or is ruled out, so callers never see
    partial markup. The held-back text is bounded by ``MAX_PENDING_CHARS``.
    """

    def __init__(self) -> None:
        self.state = ScannerState.IDLE
        self._pending = ""
        self._consumed = 0

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> ScanResult:
        if not chunk:
            return ScanResult(text="")
        buffer = self._pending + chunk
        base = self._consumed
        out: List[str] = []
        tags: List[ControlTag] = []
        index = 0
        pending_from: int | None = None

        while index < len(buffer):
            open_at = buffer.find("[", index)
            if open_at == -1:
                out.append(buffer[index:])
                index = len(buffer)
                break
            out.append(buffer[index:open_at])
            outcome, next_index, kind, payload = _match_at(buffer, open_at)
            if outcome is _Match.COMPLETE and kind is not None:
                tags.append(
                    ControlTag(
                        kind=kind,
                        payload=payload.strip() if payload is not None else None,
                        span=(base + open_at, base + next_index),
                    )
                )
                out.append(_visible_replacement(kind, payload))
                index = next_index
            elif outcome is _Match.PARTIAL:
                pending_from = open_at
                break
            else:
                out.append("[")
                index = open_at + 1

        if pending_from is not None:
            self._pending = buffer[pending_from:]
            self._consumed = base + pending_from
            assert len(self._pending) <= MAX_PENDING_CHARS, "control tag buffer exceeded its bound"
            self.state = ScannerState.PENDING_OPEN
        else:
            self._pending = ""
            self._consumed = base + len(buffer)
            self.state = ScannerState.EMITTING
        return ScanResult(text="".join(out), tags=tags)

    def flush(self) -> str:
        """Release any held-back text verbatim; an unterminated tag is treated as prose."""
        leftover = self._pending
        if leftover:
            logger.warning("Unterminated control tag at end of stream (%d chars flushed as text)", len(leftover))
        self._consumed += len(leftover)
        self._pending = ""
        self.state = ScannerState.IDLE
        return leftover


@dataclass(slots=True)
class StreamOutcome:
    visible_text: str = ""
    memory_moments: List[str] = field(default_factory=list)
    pattern_insights: List[str] = field(default_factory=list)
    reflection_accepted: bool = False
    reflection_declined: bool = False
    session_complete: bool = False
    session_summary: str | None = None
    crisis_ack: bool = False
    tags: List[ControlTag] = field(default_factory=list)

    @property
    def memory_moment(self) -> bool:
        return bool(self.memory_moments) or any(tag.kind is TagKind.MEMORY for tag in self.tags)

    @property
    def pattern_insight(self) -> bool:
        return bool(self.pattern_insights) or any(tag.kind is TagKind.PATTERN_INSIGHT for tag in self.tags)


class StreamProcessor:
    """Turns raw generated chunks into clean token events plus side-channel signals."""

    def __init__(self, *, crisis_detected: bool = False, reflection_offered: bool = False) -> None:
        self.crisis_detected = crisis_detected
        self.reflection_offered = reflection_offered
        self._scanner = TagScanner()
        self._visible: List[str] = []
        self.outcome = StreamOutcome()
        self.finished = False

    def _record(self, tags: List[ControlTag]) -> Tuple[bool, bool]:
        memory = pattern = False
        for tag in tags:
            self.outcome.tags.append(tag)
            if tag.kind is TagKind.MEMORY:
                memory = True
                if tag.payload:
                    self.outcome.memory_moments.append(tag.payload)
            elif tag.kind is TagKind.PATTERN_INSIGHT:
                pattern = True
                if tag.payload:
                    self.outcome.pattern_insights.append(tag.payload)
            elif tag.kind is TagKind.REFLECTION_ACCEPTED:
                self.outcome.reflection_accepted = True
            elif tag.kind is TagKind.REFLECTION_DECLINED:
                self.outcome.reflection_declined = True
            elif tag.kind is TagKind.SESSION_COMPLETE:
                self.outcome.session_complete = True
                if tag.payload:
                    self.outcome.session_summary = tag.payload
            elif tag.kind is TagKind.CRISIS_ACK:
                self.outcome.crisis_ack = True
        return memory, pattern

    def _event(self, text: str, memory: bool, pattern: bool) -> TokenEvent | None:
        if not text and not memory and not pattern:
            return None
        self._visible.append(text)
        return TokenEvent(
            content=text,
            memory_moment=memory,
            pattern_insight=pattern,
            crisis_detected=self.crisis_detected,
            reflection_offered=self.reflection_offered,
        )

    def feed(self, chunk: str) -> TokenEvent | None:
        result = self._scanner.feed(chunk)
        memory, pattern = self._record(result.tags)
        return self._event(result.text, memory, pattern)

    def finish(self) -> TokenEvent | None:
        if self.finished:
            return None
        self.finished = True
        event = self._event(self._scanner.flush(), False, False)
        self.outcome.visible_text = "".join(self._visible)
        if self.outcome.reflection_accepted and self.outcome.reflection_declined:
            # Contradictory signals never advance the reflection cooldown.
            self.outcome.reflection_accepted = False
        return event
