from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Tuple

from .common import as_float, as_int


GENERAL_DOMAIN = "general"


class ConversationType(str, Enum):
    COACHING = "coaching"
    DISCOVERY = "discovery"

    @classmethod
    def parse(cls, value: object) -> "ConversationType":
        raw = str(value or "").strip().lower()
        for member in cls:
            if member.value == raw:
                return member
        return cls.COACHING


class SafetyCategory(str, Enum):
    SELF_HARM = "self_harm"
    SUICIDAL_IDEATION = "suicidal_ideation"
    ABUSE = "abuse"
    SEVERE_DISTRESS = "severe_distress"
    NONE = "none"

    @classmethod
    def parse(cls, value: object) -> "SafetyCategory":
        raw = str(value or "").strip().lower()
        for member in cls:
            if member.value == raw:
                return member
        return cls.NONE


class ClassificationCategory(str, Enum):
    CONTINUITY = "continuity"
    INITIAL = "initial"
    SWITCHED = "switched"
    RETAINED = "retained"
    CLARIFY = "clarify"
    FALLBACK = "fallback"
    SUPPRESSED = "suppressed"


class TagKind(str, Enum):
    MEMORY = "memory"
    PATTERN_INSIGHT = "pattern_insight"
    REFLECTION_ACCEPTED = "reflection_accepted"
    REFLECTION_DECLINED = "reflection_declined"
    SESSION_COMPLETE = "session_complete"
    CRISIS_ACK = "crisis_ack"

    @property
    def inline(self) -> bool:
        """Inline tags keep their payload in the visible prose."""
        return self in (TagKind.MEMORY, TagKind.PATTERN_INSIGHT)


@dataclass(slots=True)
class ConversationState:
    conversation_id: str
    user_id: str
    established_domain: str | None = None
    domain_confidence: float = 0.0
    turn_count: int = 0
    last_reflection_at: datetime | None = None
    type: ConversationType = ConversationType.COACHING
    title: str | None = None


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    domain: str | None
    confidence: float
    category: ClassificationCategory
    should_clarify: bool = False
    previous_domain: str | None = None

    @property
    def changed(self) -> bool:
        return self.category in (ClassificationCategory.INITIAL, ClassificationCategory.SWITCHED)

    @classmethod
    def fallback(cls, previous_domain: str | None = None) -> "ClassificationResult":
        return cls(
            domain=GENERAL_DOMAIN,
            confidence=0.0,
            category=ClassificationCategory.FALLBACK,
            previous_domain=previous_domain,
        )


@dataclass(slots=True, frozen=True)
class SafetyResult:
    flagged: bool
    confidence: float
    category: SafetyCategory
    tier: int = 0

    @classmethod
    def not_flagged(cls, tier: int = 0) -> "SafetyResult":
        return cls(flagged=False, confidence=0.0, category=SafetyCategory.NONE, tier=tier)


@dataclass(slots=True, frozen=True)
class DomainDefinition:
    id: str
    name: str
    description: str = ""
    prompt_addition: str = ""
    tone: str = ""
    methodology: str = ""
    personality: str = ""
    keywords: Tuple[str, ...] = ()
    focus_areas: Tuple[str, ...] = ()
    guardrails: Tuple[str, ...] = ()
    enabled: bool = True

    @property
    def richness(self) -> int:
        """How actionable the configured methodology is, used to break classifier ties."""
        return len(self.methodology.split()) + len(self.focus_areas)

    @classmethod
    def neutral(cls) -> "DomainDefinition":
        return cls(id=GENERAL_DOMAIN, name="General", description="General coaching")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DomainDefinition":
        def _strings(key: str) -> Tuple[str, ...]:
            raw = payload.get(key) or []
            if not isinstance(raw, list):
                raise ValueError(f"domain config field '{key}' must be a list")
            return tuple(str(item).strip() for item in raw if str(item).strip())

        domain_id = str(payload.get("id") or "").strip().lower()
        if not domain_id:
            raise ValueError("domain config is missing 'id'")
        enabled = payload.get("enabled", True)
        return cls(
            id=domain_id,
            name=str(payload.get("name") or domain_id.title()).strip(),
            description=str(payload.get("description") or "").strip(),
            prompt_addition=str(payload.get("systemPromptAddition") or "").strip(),
            tone=str(payload.get("tone") or "").strip(),
            methodology=str(payload.get("methodology") or "").strip(),
            personality=str(payload.get("personality") or "").strip(),
            keywords=tuple(item.lower() for item in _strings("domainKeywords")),
            focus_areas=_strings("focusAreas"),
            guardrails=_strings("guardrails"),
            enabled=enabled if isinstance(enabled, bool) else True,
        )


@dataclass(slots=True)
class UserProfile:
    user_id: str
    values: List[str] = field(default_factory=list)
    goals: List[str] = field(default_factory=list)
    situation: Dict[str, str] = field(default_factory=dict)
    insights: List[Dict[str, str]] = field(default_factory=list)
    coaching_preferences: Dict[str, Any] = field(default_factory=dict)
    last_reflection_at: datetime | None = None
    discovery_completed_at: datetime | None = None
    discovery_summary: str | None = None

    @property
    def has_context(self) -> bool:
        return bool(self.values or self.goals or any(self.situation.values()) or self.insights)


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str
    content: str
    created_at: datetime | None = None


@dataclass(slots=True)
class PastConversation:
    conversation_id: str
    title: str | None
    domain: str | None
    summary: str
    last_message_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class PatternSummary:
    theme: str
    synthesis: str
    domains: Tuple[str, ...] = ()
    occurrence_count: int = 0
    confidence: float = 0.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PatternSummary":
        domains = row.get("domains") or ()
        return cls(
            theme=str(row.get("theme") or "").strip(),
            synthesis=str(row.get("synthesis") or "").strip(),
            domains=tuple(str(item) for item in domains),
            occurrence_count=as_int(row.get("occurrence_count"), 0),
            confidence=as_float(row.get("confidence"), 0.0),
        )


@dataclass(slots=True)
class CoachingContext:
    """Everything assembled to personalize one turn; every field has a usable zero value."""

    profile: UserProfile | None = None
    recent_messages: List[ChatMessage] = field(default_factory=list)
    history: List[PastConversation] = field(default_factory=list)
    patterns: List[PatternSummary] = field(default_factory=list)
    style_instructions: str = ""
    session_count: int = 0
    domain_usage: Dict[str, int] = field(default_factory=dict)
    degraded: Tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ReflectionContext:
    session_count: int
    last_reflection_at: datetime | None
    pattern_summary: str = ""
    recent_themes: Tuple[str, ...] = ()
    domain_usage: Dict[str, int] = field(default_factory=dict)
    previous_unresolved_topic: str | None = None
    offer_reflection: bool = False


@dataclass(slots=True, frozen=True)
class PromptSection:
    priority: int
    text: str
    required: bool = False
    name: str = ""


@dataclass(slots=True, frozen=True)
class ControlTag:
    kind: TagKind
    payload: str | None
    span: Tuple[int, int]


@dataclass(slots=True, frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_estimate: float = 0.0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_estimate": round(self.cost_estimate, 6),
        }


@dataclass(slots=True, frozen=True)
class TokenEvent:
    content: str
    memory_moment: bool = False
    pattern_insight: bool = False
    crisis_detected: bool = False
    reflection_offered: bool = False

    type = "token"

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "memory_moment": self.memory_moment,
            "pattern_insight": self.pattern_insight,
            "crisis_detected": self.crisis_detected,
            "reflection_offered": self.reflection_offered,
        }


@dataclass(slots=True)
class DoneEvent:
    message_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    domain: str | None = None
    crisis_detected: bool = False
    reflection_offered: bool = False
    reflection_accepted: bool = False
    reflection_declined: bool = False
    session_complete: bool = False
    memory_moment: bool = False
    pattern_insight: bool = False
    memory_moments: List[str] = field(default_factory=list)
    pattern_insights: List[str] = field(default_factory=list)
    session_summary: str | None = None
    error: str | None = None

    type = "done"

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message_id": self.message_id,
            "usage": self.usage.to_wire(),
            "domain": self.domain,
            "crisis_detected": self.crisis_detected,
            "reflection_offered": self.reflection_offered,
            "reflection_accepted": self.reflection_accepted,
            "reflection_declined": self.reflection_declined,
            "session_complete": self.session_complete,
            "memory_moment": self.memory_moment,
            "pattern_insight": self.pattern_insight,
            "memory_moments": list(self.memory_moments),
            "pattern_insights": list(self.pattern_insights),
            "session_summary": self.session_summary,
            "error": self.error,
        }


StreamEvent = TokenEvent | DoneEvent
