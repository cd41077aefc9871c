from __future__ import annotations

from typing import Iterable, List

from ..common import truncate
from ..models import (
    GENERAL_DOMAIN,
    ClassificationResult,
    CoachingContext,
    DomainDefinition,
    PromptSection,
    ReflectionContext,
    SafetyResult,
)
from ..prompts import coaching

PRIORITY_BASE = 0
PRIORITY_SAFETY = 10
PRIORITY_DOMAIN = 20
PRIORITY_USER_CONTEXT = 30
PRIORITY_HISTORY = 40
PRIORITY_REFLECTION = 50

DEFAULT_REFLECTION_MAX_CHARS = 1400


def compose_sections(sections: Iterable[PromptSection]) -> str:
    """Join non-empty sections in ascending priority; ties keep insertion order.

    Optional sections with no text are dropped; an empty required section is an error.
    """
    kept: List[PromptSection] = []
    for section in sections:
        if section.text.strip():
            kept.append(section)
        elif section.required:
            raise ValueError(f"Required prompt section '{section.name or section.priority}' is empty")
    ordered = sorted(kept, key=lambda section: section.priority)
    return "\n\n".join(section.text.strip() for section in ordered)


def build_sections(
    base: str,
    safety: SafetyResult,
    domain: ClassificationResult,
    definition: DomainDefinition | None,
    context: CoachingContext,
    reflection: ReflectionContext | None,
    *,
    reflection_max_chars: int = DEFAULT_REFLECTION_MAX_CHARS,
) -> List[PromptSection]:
    sections = [PromptSection(PRIORITY_BASE, base, required=True, name="base")]

    if safety.flagged:
        sections.append(PromptSection(PRIORITY_SAFETY, coaching.build_safety_override(), required=True, name="safety"))
    else:
        domain_parts: list[str] = []
        if definition is not None and definition.id != GENERAL_DOMAIN:
            transitioned_from = domain.previous_domain if domain.changed else None
            domain_parts.append(coaching.build_domain_section(definition, transitioned_from))
        if domain.should_clarify:
            domain_parts.append(coaching.build_clarify_instruction())
        sections.append(PromptSection(PRIORITY_DOMAIN, "\n\n".join(part for part in domain_parts if part), name="domain"))

    sections.append(
        PromptSection(
            PRIORITY_USER_CONTEXT,
            "\n\n".join(
                part
                for part in (
                    coaching.build_user_context_section(context.profile),
                    coaching.build_style_section(context.style_instructions),
                    coaching.build_discovery_context_section(context.profile),
                )
                if part
            ),
            name="user_context",
        )
    )
    check_in = ""
    if not safety.flagged and reflection is not None:
        check_in = coaching.build_session_check_in(reflection.previous_unresolved_topic)
    sections.append(
        PromptSection(
            PRIORITY_HISTORY,
            "\n\n".join(
                part
                for part in (
                    coaching.build_history_section(context.history),
                    coaching.build_patterns_section(context.patterns),
                    check_in,
                )
                if part
            ),
            name="history",
        )
    )

    if not safety.flagged and reflection is not None and reflection.offer_reflection:
        text = truncate(coaching.build_reflection_offer(reflection), reflection_max_chars)
        sections.append(PromptSection(PRIORITY_REFLECTION, text, name="reflection"))

    return sections


def compose(
    base: str,
    safety: SafetyResult,
    domain: ClassificationResult,
    definition: DomainDefinition | None,
    context: CoachingContext,
    reflection: ReflectionContext | None,
    *,
    reflection_max_chars: int = DEFAULT_REFLECTION_MAX_CHARS,
) -> str:
    """Deterministic system prompt for a turn.

    A flagged safety result replaces the domain and reflection sections with the
    safety override; user context and history stay so the reply still feels personal.
    """
    return compose_sections(
        build_sections(
            base,
            safety,
            domain,
            definition,
            context,
            reflection,
            reflection_max_chars=reflection_max_chars,
        )
    )
