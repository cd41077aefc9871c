from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from coach_pipeline.models import TagKind  # noqa: E402
from coach_pipeline.pipeline.stream import (  # noqa: E402
    MAX_PENDING_CHARS,
    ScannerState,
    StreamProcessor,
    TagScanner,
    find_control_tags,
    strip_control_tags,
)


SAMPLES = [
    "Plain coaching reply with no markup at all.",
    "You said [MEMORY: you value honesty] last week. [PATTERN: you pause before big moves] Tell me more.",
    "Lovely to hear. [REFLECTION_ACCEPTED] Here is what I noticed.",
    "Of course. What's on your mind? [REFLECTION_DECLINED]",
    "Thank you for sharing. [SESSION_COMPLETE: values family, wants a calmer job]",
    "A [bracket] that is not a tag, and [MEMORY: kept] one that is.",
    "[discovery_complete: lower-case alias] closes the session.",
    "Edge [ at the end [",
    "ok [CRISIS_AC\u212a] done",
]


def _run(chunks: list[str], **kwargs) -> tuple[list, StreamProcessor]:  # type: ignore[no-untyped-def]
    processor = StreamProcessor(**kwargs)
    events = []
    for chunk in chunks:
        event = processor.feed(chunk)
        if event is not None:
            events.append(event)
    tail = processor.finish()
    if tail is not None:
        events.append(tail)
    return events, processor


def _split_every(text: str, size: int) -> list[str]:
    return [text[index : index + size] for index in range(0, len(text), size)]


@pytest.mark.parametrize("text", SAMPLES)
@pytest.mark.parametrize("size", [1, 2, 3, 7, 1000])
def test_concatenated_tokens_match_tag_free_text_for_any_chunking(text: str, size: int) -> None:
    events, processor = _run(_split_every(text, size))

    assert "".join(event.content for event in events) == strip_control_tags(text)
    assert processor.outcome.visible_text == strip_control_tags(text)


def test_tokens_never_expose_partial_markup_while_tag_is_open() -> None:
    text = "Before [MEMORY: your sister's wedding] after"
    events, _ = _run(_split_every(text, 1))

    for event in events:
        assert "[" not in event.content
        assert "MEMORY" not in event.content
    assert "".join(event.content for event in events) == "Before your sister's wedding after"


def test_inline_tags_keep_payload_and_flag_only_resolving_fragment() -> None:
    events, processor = _run(["I remember [MEM", "ORY: your promotion", "] and ", "[PATTERN: you wait] ok"])

    memory_events = [event for event in events if event.memory_moment]
    pattern_events = [event for event in events if event.pattern_insight]
    assert len(memory_events) == 1
    assert len(pattern_events) == 1
    assert memory_events[0].content == "your promotion and "
    assert processor.outcome.memory_moments == ["your promotion"]
    assert processor.outcome.pattern_insights == ["you wait"]
    assert processor.outcome.memory_moment is True
    assert processor.outcome.pattern_insight is True


def test_multiple_tags_in_one_chunk_are_all_extracted() -> None:
    text = "[REFLECTION_ACCEPTED]Great.[CRISIS_ACK] [SESSION_COMPLETE: summary here]"
    _, processor = _run([text])

    kinds = [tag.kind for tag in processor.outcome.tags]
    assert kinds == [TagKind.REFLECTION_ACCEPTED, TagKind.CRISIS_ACK, TagKind.SESSION_COMPLETE]
    assert processor.outcome.reflection_accepted is True
    assert processor.outcome.crisis_ack is True
    assert processor.outcome.session_complete is True
    assert processor.outcome.session_summary == "summary here"
    assert processor.outcome.visible_text == "Great. "


def test_contradictory_reflection_signals_do_not_count_as_accepted() -> None:
    _, processor = _run(["[REFLECTION_ACCEPTED] hmm [REFLECTION_DECLINED]"])

    assert processor.outcome.reflection_accepted is False
    assert processor.outcome.reflection_declined is True


def test_unterminated_tag_is_flushed_as_text_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    text = "Closing thought [MEMORY: never closed"
    with caplog.at_level("WARNING", logger="coach_pipeline.stream"):
        events, processor = _run(_split_every(text, 4))

    assert "".join(event.content for event in events) == text
    assert processor.outcome.memory_moment is False
    assert any("Unterminated control tag" in record.getMessage() for record in caplog.records)


def test_turn_level_flags_are_repeated_on_every_token() -> None:
    events, _ = _run(["Hello ", "there"], crisis_detected=True, reflection_offered=True)

    assert events
    assert all(event.crisis_detected and event.reflection_offered for event in events)


def test_payload_over_limit_or_with_newline_is_not_a_tag() -> None:
    too_long = "[MEMORY: " + "x" * 600 + "]"
    with_newline = "[PATTERN: first line\nsecond]"

    assert find_control_tags(too_long) == []
    assert find_control_tags(with_newline) == []
    events, _ = _run(_split_every(too_long + with_newline, 5))
    assert "".join(event.content for event in events) == too_long + with_newline


def test_lookalike_tag_names_are_plain_text() -> None:
    text = "ok [CRISIS_AC\u212a] done"

    assert find_control_tags(text) == []
    assert strip_control_tags(text) == text


def test_held_back_text_stays_within_bound() -> None:
    scanner = TagScanner()
    released = [scanner.feed("[MEMORY: ").text]
    longest = len(scanner.pending)
    for _ in range(600):
        released.append(scanner.feed("x").text)
        longest = max(longest, len(scanner.pending))

    assert longest <= MAX_PENDING_CHARS
    assert scanner.pending == ""
    assert "".join(released) == "[MEMORY: " + "x" * 600


def test_scanner_states_and_spans_use_stream_offsets() -> None:
    scanner = TagScanner()
    first = scanner.feed("abc [REFL")
    assert first.text == "abc "
    assert scanner.state is ScannerState.PENDING_OPEN
    assert scanner.pending == "[REFL"

    second = scanner.feed("ECTION_DECLINED] tail")
    assert second.text == " tail"
    assert scanner.state is ScannerState.EMITTING
    assert [tag.span for tag in second.tags] == [(4, 25)]
    assert scanner.flush() == ""
    assert scanner.state is ScannerState.IDLE


def test_finish_is_idempotent() -> None:
    processor = StreamProcessor()
    processor.feed("text [CRISIS")
    assert processor.finish() is not None
    assert processor.finish() is None
    assert processor.finished is True
