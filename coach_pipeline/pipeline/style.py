from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping

from ..common import as_float, as_int

MIN_SESSIONS_FOR_STYLE = 5
STRONG_PREFERENCE_HIGH = 0.65
STRONG_PREFERENCE_LOW = 0.35


@dataclass(slots=True, frozen=True)
class StylePreference:
    """Coaching style dimensions on a 0..1 scale; 0.5 is balanced."""

    direct_vs_exploratory: float = 0.5
    brief_vs_detailed: float = 0.5
    action_vs_reflective: float = 0.5
    challenging_vs_supportive: float = 0.5
    playful_humor: bool = False
    concrete_examples: bool = False

    @classmethod
    def from_dimensions(cls, raw: Mapping[str, Any]) -> "StylePreference":
        def _dimension(key: str) -> float:
            value = raw.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return 0.5
            return max(0.0, min(1.0, float(value)))

        return cls(
            direct_vs_exploratory=_dimension("direct_vs_exploratory"),
            brief_vs_detailed=_dimension("brief_vs_detailed"),
            action_vs_reflective=_dimension("action_vs_reflective"),
            challenging_vs_supportive=_dimension("challenging_vs_supportive"),
            playful_humor=raw.get("playful_humor") is True,
            concrete_examples=raw.get("concrete_examples") is True,
        )


_SUPPORTIVE = StylePreference(0.4, 0.45, 0.4, 0.15)
_PLAYFUL = StylePreference(0.58, 0.58, 0.62, 0.22, playful_humor=True, concrete_examples=True)

MANUAL_STYLE_PRESETS: Dict[str, StylePreference] = {
    "balanced": StylePreference(),
    "direct": StylePreference(0.85, 0.65, 0.8, 0.6),
    "compassionate": _SUPPORTIVE,
    "supportive": _SUPPORTIVE,
    "challenging": StylePreference(0.72, 0.55, 0.78, 0.88),
    "exploratory": StylePreference(0.2, 0.35, 0.32, 0.3),
    "playful": _PLAYFUL,
    "humorous": _PLAYFUL,
    "human": StylePreference(0.55, 0.52, 0.58, 0.25, playful_humor=True, concrete_examples=True),
}

# (attribute, high instruction, low instruction, high label, low label)
_DIMENSIONS = (
    (
        "direct_vs_exploratory",
        "Lead with concrete next steps rather than open-ended exploration.",
        "Use open-ended questions to help them discover their own insights.",
        "direct",
        "exploratory",
    ),
    (
        "brief_vs_detailed",
        "Keep responses concise and focused.",
        "Provide detailed explanations and thorough exploration of topics.",
        "concise",
        "detailed",
    ),
    (
        "action_vs_reflective",
        "Keep recommendations specific and actionable.",
        "Prioritize reflection and self-discovery over action items.",
        "action-oriented",
        "reflective",
    ),
    (
        "challenging_vs_supportive",
        "Challenge assumptions and push for deeper thinking.",
        "Prioritize empathy and validation before suggesting actions.",
        "challenging",
        "supportive",
    ),
)
_LABEL_ORDER = ("direct_vs_exploratory", "action_vs_reflective", "challenging_vs_supportive", "brief_vs_detailed")


def _manual_override(preferences: Mapping[str, Any]) -> str | None:
    value = preferences.get("manual_override")
    if isinstance(value, str):
        return value
    overrides = preferences.get("manual_overrides")
    if isinstance(overrides, dict) and isinstance(overrides.get("style"), str):
        return overrides["style"]
    return None


def resolve_style_preferences(
    preferences: Mapping[str, Any] | None,
    *,
    domain: str | None = None,
    session_count: int = 0,
    min_sessions: int = MIN_SESSIONS_FOR_STYLE,
) -> StylePreference | None:
    """Pick the style to coach with, or None for the balanced default.

    A manual preset always wins. Learned styles need enough sessions, and a
    domain-specific style beats the global dimensions.
    """
    if not preferences:
        return None

    override = _manual_override(preferences)
    if override:
        preset = MANUAL_STYLE_PRESETS.get(override.strip().lower())
        if preset is not None:
            return preset

    sessions = max(session_count, as_int(preferences.get("session_count"), 0))
    if sessions < min_sessions:
        return None

    if domain:
        domain_styles = preferences.get("domain_styles")
        if isinstance(domain_styles, dict) and isinstance(domain_styles.get(domain), dict):
            return StylePreference.from_dimensions(domain_styles[domain])

    dimensions = preferences.get("style_dimensions")
    if isinstance(dimensions, dict):
        return StylePreference.from_dimensions(dimensions)
    return None


def build_style_label(prefs: StylePreference) -> str:
    by_name = {item[0]: item for item in _DIMENSIONS}
    labels: list[str] = []
    for name in _LABEL_ORDER:
        _, _, _, high_label, low_label = by_name[name]
        value = as_float(getattr(prefs, name), 0.5)
        if value > STRONG_PREFERENCE_HIGH:
            labels.append(high_label)
        elif value < STRONG_PREFERENCE_LOW:
            labels.append(low_label)
    if prefs.playful_humor:
        labels.append("playful")
    return ", ".join(labels) if labels else "balanced"


def format_style_instructions(prefs: StylePreference | None) -> str:
    if prefs is None:
        return ""

    instructions: list[str] = []
    for name, high, low, _, _ in _DIMENSIONS:
        value = getattr(prefs, name)
        if value > STRONG_PREFERENCE_HIGH:
            instructions.append(high)
        elif value < STRONG_PREFERENCE_LOW:
            instructions.append(low)

    if prefs.playful_humor:
        instructions.append(
            "Use light, kind humor occasionally when it fits naturally. Never use sarcasm or humor about pain."
        )
        instructions.append(
            'Avoid therapy-style opener loops like repeatedly starting with "I hear you." Vary openings naturally.'
        )
    if prefs.concrete_examples:
        instructions.append("Use brief, relatable examples to make the coaching feel practical and human.")

    if not instructions:
        return ""
    return f"This user prefers {build_style_label(prefs)} coaching.\n" + "\n".join(instructions)
