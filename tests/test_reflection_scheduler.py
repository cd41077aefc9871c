from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from coach_pipeline.models import PastConversation, PatternSummary  # noqa: E402
from coach_pipeline.pipeline.reflection import ReflectionScheduler  # noqa: E402


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("sessions", "days_ago", "expected"),
    [
        (7, None, False),
        (8, None, True),
        (10, 20, False),
        (10, 25, True),
        (10, 26, True),
        (3, 400, False),
    ],
)
def test_eligibility_needs_sessions_and_cooldown(sessions: int, days_ago: int | None, expected: bool) -> None:
    scheduler = ReflectionScheduler()
    last = NOW - timedelta(days=days_ago) if days_ago is not None else None

    assert scheduler.eligible(sessions, last, NOW) is expected


def test_eligibility_is_a_pure_predicate() -> None:
    scheduler = ReflectionScheduler()
    last = NOW - timedelta(days=40)

    assert scheduler.eligible(9, last, NOW) is True
    assert scheduler.eligible(9, last, NOW) is True


def test_custom_thresholds() -> None:
    scheduler = ReflectionScheduler(min_sessions=2, cooldown_days=1)

    assert scheduler.eligible(2, NOW - timedelta(hours=30), NOW) is True
    assert scheduler.eligible(2, NOW - timedelta(hours=20), NOW) is False


def test_context_summarizes_patterns_and_previous_topic() -> None:
    scheduler = ReflectionScheduler()
    history = [
        PastConversation("c2", "Raise", "career", "Career: asking for a raise"),
        PastConversation("c1", "Sleep", "fitness", "Fitness: sleeping earlier"),
    ]
    patterns = [
        PatternSummary("waiting for permission", "You hold back until someone approves", ("career",), 4, 0.8),
        PatternSummary("energy dips", "Evenings drain you", ("fitness",), 3, 0.7),
        PatternSummary("perfectionism", "You polish instead of shipping", ("creativity",), 3, 0.6),
    ]

    context = scheduler.build_context(
        session_count=12,
        last_reflection_at=None,
        history=history,
        patterns=patterns,
        domain_usage={"career": 7, "fitness": 5},
        now=NOW,
    )

    assert context.offer_reflection is True
    assert context.pattern_summary == "You hold back until someone approves; Evenings drain you"
    assert context.recent_themes == ("waiting for permission", "energy dips", "perfectionism")
    assert context.previous_unresolved_topic == "Career: asking for a raise"
    assert context.domain_usage == {"career": 7, "fitness": 5}


def test_suppressed_context_never_offers() -> None:
    scheduler = ReflectionScheduler()
    history = [PastConversation("c1", None, None, "General coaching conversation")]

    context = scheduler.build_context(
        session_count=20,
        last_reflection_at=None,
        history=history,
        suppressed=True,
        now=NOW,
    )

    assert context.offer_reflection is False
    assert context.previous_unresolved_topic is None


def test_context_below_threshold_keeps_check_in_topic() -> None:
    scheduler = ReflectionScheduler()

    context = scheduler.build_context(
        session_count=3,
        last_reflection_at=None,
        history=[PastConversation("c1", "Gym", "fitness", "Fitness: starting a routine")],
        now=NOW,
    )

    assert context.offer_reflection is False
    assert context.previous_unresolved_topic == "Fitness: starting a routine"
    assert context.pattern_summary == ""
