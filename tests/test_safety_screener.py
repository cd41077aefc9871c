from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from coach_pipeline.models import ChatMessage, SafetyCategory  # noqa: E402
from coach_pipeline.pipeline.safety import SafetyScreener  # noqa: E402


class _FakeClassifier:
    def __init__(self, payload=None, *, delay: float = 0.0, raises: bool = False) -> None:  # type: ignore[no-untyped-def]
        self.payload = payload
        self.delay = delay
        self.raises = raises
        self.calls: list[list[dict[str, str]]] = []

    async def json_chat(self, messages, schema_hint):  # type: ignore[no-untyped-def]
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises:
            raise RuntimeError("classifier down")
        return self.payload


def test_explicit_crisis_phrase_flags_without_classifier_call() -> None:
    classifier = _FakeClassifier({"crisis": False, "confidence": 0.0})
    screener = SafetyScreener(classifier)

    result = asyncio.run(screener.screen("I want to kill myself"))

    assert result.flagged is True
    assert result.confidence >= 0.8
    assert result.category is SafetyCategory.SELF_HARM
    assert result.tier == 1
    assert classifier.calls == []


def test_figure_of_speech_is_not_flagged() -> None:
    classifier = _FakeClassifier({"crisis": True, "confidence": 0.9})
    screener = SafetyScreener(classifier)

    result = asyncio.run(screener.screen("This job is killing me"))

    assert result.flagged is False
    assert classifier.calls == []


def test_curly_apostrophe_still_matches_phrase() -> None:
    screener = SafetyScreener(None)

    result = asyncio.run(screener.screen("I don’t want to live like this"))

    assert result.flagged is True
    assert result.category is SafetyCategory.SUICIDAL_IDEATION


def test_escalating_context_runs_tier_two_and_leans_flagged() -> None:
    classifier = _FakeClassifier({"crisis": True, "confidence": 0.4, "category": "severe_distress"})
    screener = SafetyScreener(classifier, flag_threshold=0.6)
    recent = [
        ChatMessage(role="user", content="Everything feels hopeless lately"),
        ChatMessage(role="assistant", content="That sounds heavy."),
    ]

    result = asyncio.run(screener.screen("I just can't keep going like this", recent))

    assert len(classifier.calls) == 1
    assert result.tier == 2
    assert result.flagged is True
    assert result.confidence >= 0.6
    assert result.category is SafetyCategory.SEVERE_DISTRESS


def test_tier_two_below_threshold_is_not_flagged() -> None:
    classifier = _FakeClassifier({"crisis": False, "confidence": 0.3, "category": "none"})
    screener = SafetyScreener(classifier)

    result = asyncio.run(screener.screen("I feel hopeless about this project"))

    assert result.tier == 2
    assert result.flagged is False
    assert result.category is SafetyCategory.NONE


@pytest.mark.parametrize(
    "classifier",
    [
        _FakeClassifier(raises=True),
        _FakeClassifier({"crisis": True, "confidence": 0.95}, delay=0.5),
        _FakeClassifier(None),
    ],
)
def test_tier_two_failures_fail_open(classifier: _FakeClassifier) -> None:
    screener = SafetyScreener(classifier, tier2_deadline_seconds=0.05)

    result = asyncio.run(screener.screen("I feel worthless and trapped"))

    assert result.flagged is False
    assert result.tier == 2


def test_calm_message_skips_tier_two() -> None:
    classifier = _FakeClassifier({"crisis": True, "confidence": 1.0})
    screener = SafetyScreener(classifier)

    result = asyncio.run(screener.screen("I'd like to plan my week better"))

    assert result.flagged is False
    assert result.tier == 0
    assert classifier.calls == []


def test_message_content_is_never_logged(caplog: pytest.LogCaptureFixture) -> None:
    screener = SafetyScreener(None)
    with caplog.at_level("INFO", logger="coach_pipeline.safety"):
        asyncio.run(screener.screen("I want to end my life tonight"))

    assert caplog.records
    assert all("end my life" not in record.getMessage() for record in caplog.records)


def test_interpret_coerces_string_flags_and_clamps_confidence() -> None:
    screener = SafetyScreener(None)

    result = screener.interpret({"flagged": "true", "confidence": 7, "category": "abuse"})

    assert result.flagged is True
    assert result.confidence == 1.0
    assert result.category is SafetyCategory.ABUSE
