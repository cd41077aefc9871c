from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Dict, List, Protocol, Sequence, TypeVar

from ..common import truncate, utc_now
from ..config import Settings
from ..domains.registry import DomainRegistry
from ..models import (
    GENERAL_DOMAIN,
    ChatMessage,
    ClassificationResult,
    CoachingContext,
    ConversationState,
    ConversationType,
    DoneEvent,
    ReflectionContext,
    SafetyResult,
    StreamEvent,
    Usage,
)
from ..prompts.coaching import build_base_prompt, build_discovery_prompt
from ..services.cost import calculate_cost
from .composer import compose
from .context import ContextAssembler
from .domain_classifier import DomainClassifier
from .reflection import ReflectionScheduler
from .safety import JsonClassifier, SafetyScreener
from .stream import StreamProcessor

logger = logging.getLogger("coach_pipeline.turn")

T = TypeVar("T")

TITLE_MAX_CHARS = 60


class GenerationChunkLike(Protocol):
    text: str
    input_tokens: int | None
    output_tokens: int | None


class Generator(Protocol):
    model: str

    def stream_chat(self, system_prompt: str, messages: List[Dict[str, str]]) -> AsyncIterator[GenerationChunkLike]: ...


def prior_messages(recent: Sequence[ChatMessage], current_message: str) -> List[ChatMessage]:
    """Recent window without the current message.

    The current message is normally already stored as the newest user row; it is only
    dropped when that row actually carries the same text.
    """
    if recent and recent[-1].role == "user" and recent[-1].content.strip() == current_message.strip():
        return list(recent[:-1])
    return list(recent)


def build_generation_messages(prior: Sequence[ChatMessage], current_message: str) -> List[Dict[str, str]]:
    """Chronological chat window for generation: empty turns dropped, same-role runs merged.

    ``prior`` excludes the current message, which always closes the window.
    """
    merged: List[Dict[str, str]] = []
    for item in prior:
        role = "assistant" if item.role == "assistant" else "user"
        content = item.content.strip()
        if not content:
            continue
        if merged and merged[-1]["role"] == role:
            merged[-1]["content"] += "\n\n" + content
        else:
            merged.append({"role": role, "content": content})

    while merged and merged[0]["role"] != "user":
        merged.pop(0)
    current = current_message.strip()
    if merged and merged[-1]["role"] == "user":
        merged[-1]["content"] += "\n\n" + current
    else:
        merged.append({"role": "user", "content": current})
    return merged


@dataclass(slots=True)
class _TurnPlan:
    now: datetime
    state: ConversationState
    safety: SafetyResult
    domain: ClassificationResult
    context: CoachingContext
    reflection: ReflectionContext
    system_prompt: str
    messages: List[Dict[str, str]]


class CoachingTurnPipeline:
    """Runs one coaching turn end to end and yields token events followed by exactly one done event."""

    def __init__(
        self,
        store: Any,
        generator: Generator,
        *,
        safety: SafetyScreener,
        domains: DomainClassifier,
        registry: DomainRegistry,
        assembler: ContextAssembler,
        scheduler: ReflectionScheduler,
        max_recent_messages: int = 20,
        reflection_max_chars: int = 1400,
    ) -> None:
        self.store = store
        self.generator = generator
        self.safety = safety
        self.domains = domains
        self.registry = registry
        self.assembler = assembler
        self.scheduler = scheduler
        self.max_recent_messages = max_recent_messages
        self.reflection_max_chars = reflection_max_chars

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Any,
        generator: Generator,
        classifier: JsonClassifier | None,
        registry: DomainRegistry,
    ) -> "CoachingTurnPipeline":
        return cls(
            store,
            generator,
            safety=SafetyScreener(
                classifier,
                flag_threshold=settings.safety_flag_threshold,
                keyword_confidence=settings.safety_keyword_confidence,
                tier2_deadline_seconds=settings.safety_tier2_deadline_ms / 1000,
            ),
            domains=DomainClassifier(
                registry,
                classifier,
                initial_threshold=settings.domain_initial_threshold,
                switch_threshold=settings.domain_switch_threshold,
                tie_margin=settings.domain_tie_margin,
                deadline_seconds=settings.domain_classify_deadline_ms / 1000,
            ),
            registry=registry,
            assembler=ContextAssembler.from_settings(store, settings),
            scheduler=ReflectionScheduler(settings.reflection_min_sessions, settings.reflection_cooldown_days),
            max_recent_messages=settings.max_recent_messages,
            reflection_max_chars=settings.reflection_max_chars,
        )

    async def _safe(self, name: str, awaitable: Awaitable[T], default: T) -> T:
        try:
            return await awaitable
        except Exception as exc:
            logger.warning("Turn step '%s' failed: %s", name, exc)
            return default

    async def _base_prompt(self, state: ConversationState, recent: Sequence[ChatMessage]) -> str:
        if state.type is not ConversationType.DISCOVERY:
            return build_base_prompt()
        window_count = sum(1 for item in recent if item.role == "user")
        user_count = await self._safe(
            "count_user_messages",
            self.store.count_user_messages(state.conversation_id),
            window_count,
        )
        return build_discovery_prompt(max(user_count, window_count))

    async def _plan(self, state: ConversationState, message: str, now: datetime) -> _TurnPlan:
        recent: List[ChatMessage] = await self._safe(
            "recent_messages",
            self.store.get_recent_messages(state.conversation_id, self.max_recent_messages),
            [],
        )
        prior = prior_messages(recent, message)
        possible_shift = self.domains.detect_shift(message, state)

        safety, context = await asyncio.gather(
            self.safety.screen(message, prior),
            self.assembler.assemble(
                state.user_id,
                state.conversation_id,
                domain=state.established_domain,
                recent_messages=recent,
            ),
        )

        if safety.flagged:
            domain = self.domains.suppressed(state)
        elif not possible_shift:
            domain = self.domains.continuity(state)
        else:
            domain = await self.domains.classify(message, prior, state)

        profile = context.profile
        reflection = self.scheduler.build_context(
            session_count=context.session_count,
            last_reflection_at=profile.last_reflection_at if profile is not None else None,
            history=context.history,
            patterns=context.patterns,
            domain_usage=context.domain_usage,
            suppressed=safety.flagged or "profile" in context.degraded or "session_count" in context.degraded,
            now=now,
        )

        definition = None if safety.flagged else self.registry.get(domain.domain or GENERAL_DOMAIN)
        system_prompt = compose(
            await self._base_prompt(state, context.recent_messages),
            safety,
            domain,
            definition,
            context,
            reflection,
            reflection_max_chars=self.reflection_max_chars,
        )
        return _TurnPlan(
            now=now,
            state=state,
            safety=safety,
            domain=domain,
            context=context,
            reflection=reflection,
            system_prompt=system_prompt,
            messages=build_generation_messages(prior_messages(context.recent_messages, message), message),
        )

    def _fallback_plan(self, state: ConversationState, message: str, now: datetime) -> _TurnPlan:
        return _TurnPlan(
            now=now,
            state=state,
            safety=SafetyResult.not_flagged(),
            domain=ClassificationResult.fallback(state.established_domain),
            context=CoachingContext(degraded=("all",)),
            reflection=ReflectionContext(session_count=0, last_reflection_at=None),
            system_prompt=build_base_prompt(),
            messages=build_generation_messages((), message),
        )

    async def _persist(self, plan: _TurnPlan, processor: StreamProcessor, done: DoneEvent) -> None:
        state = plan.state
        outcome = processor.outcome
        message_id = str(uuid.uuid4())
        await self.store.save_message(
            state.conversation_id,
            state.user_id,
            "assistant",
            outcome.visible_text,
            message_id=message_id,
            token_count=done.usage.output_tokens,
            created_at=utc_now(),
        )
        done.message_id = message_id

        domain = plan.domain
        established = domain.domain if domain.changed else state.established_domain
        confidence = domain.confidence if domain.changed else state.domain_confidence
        await self.store.update_conversation_state(
            state.conversation_id,
            established_domain=established,
            domain_confidence=confidence,
            turn_count=state.turn_count + 1,
            last_message_at=plan.now,
        )
        if domain.changed:
            logger.info(
                "Conversation domain set conversation=%s domain=%s previous=%s",
                state.conversation_id,
                established,
                domain.previous_domain,
            )

        if done.reflection_accepted:
            await self.store.set_last_reflection_at(state.user_id, plan.now)
        if done.session_complete and state.type is ConversationType.DISCOVERY:
            await self.store.mark_discovery_complete(state.user_id, plan.now, outcome.session_summary)

    async def _log_usage(self, plan: _TurnPlan, done: DoneEvent) -> None:
        if not done.usage.input_tokens and not done.usage.output_tokens:
            return
        await self._safe(
            "usage_log",
            self.store.log_usage(
                plan.state.user_id,
                conversation_id=plan.state.conversation_id,
                message_id=done.message_id,
                model=self.generator.model,
                tokens_in=done.usage.input_tokens,
                tokens_out=done.usage.output_tokens,
                cost_usd=done.usage.cost_estimate,
                crisis_detected=done.crisis_detected,
            ),
            None,
        )

    def _done_event(
        self,
        plan: _TurnPlan,
        processor: StreamProcessor,
        input_tokens: int,
        output_tokens: int,
        error: str | None,
    ) -> DoneEvent:
        outcome = processor.outcome
        offered = plan.reflection.offer_reflection
        return DoneEvent(
            usage=Usage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_estimate=calculate_cost(self.generator.model, input_tokens, output_tokens),
            ),
            domain=plan.domain.domain or GENERAL_DOMAIN,
            crisis_detected=plan.safety.flagged,
            reflection_offered=offered,
            reflection_accepted=offered and outcome.reflection_accepted,
            reflection_declined=offered and outcome.reflection_declined,
            session_complete=outcome.session_complete,
            memory_moment=outcome.memory_moment,
            pattern_insight=outcome.pattern_insight,
            memory_moments=list(outcome.memory_moments),
            pattern_insights=list(outcome.pattern_insights),
            session_summary=outcome.session_summary,
            error=error,
        )

    async def run_turn(self, user_id: str, conversation_id: str, message: str) -> AsyncIterator[StreamEvent]:
        now = utc_now()
        state = await self._safe("load_conversation", self.store.get_conversation(conversation_id), None)
        if state is None or state.user_id != user_id:
            logger.warning("Turn rejected: conversation %s not found for user", conversation_id)
            yield DoneEvent(error="conversation_not_found")
            return

        await self._safe(
            "save_user_message",
            self.store.save_message(conversation_id, user_id, "user", message, created_at=now),
            None,
        )
        await self._safe(
            "set_title",
            self.store.set_conversation_title_if_empty(conversation_id, truncate(" ".join(message.split()), TITLE_MAX_CHARS)),
            None,
        )

        try:
            plan = await self._plan(state, message, now)
        except Exception as exc:
            logger.warning("Turn planning failed for conversation %s (%s); using plain coaching prompt", conversation_id, exc)
            plan = self._fallback_plan(state, message, now)
        processor = StreamProcessor(
            crisis_detected=plan.safety.flagged,
            reflection_offered=plan.reflection.offer_reflection,
        )
        input_tokens = output_tokens = 0
        delivered = False
        error: str | None = None

        try:
            try:
                async for chunk in self.generator.stream_chat(plan.system_prompt, plan.messages):
                    if chunk.input_tokens is not None:
                        input_tokens = chunk.input_tokens
                    if chunk.output_tokens is not None:
                        output_tokens = chunk.output_tokens
                    if chunk.text:
                        event = processor.feed(chunk.text)
                        if event is not None:
                            yield event
            except (asyncio.CancelledError, GeneratorExit):
                raise
            except Exception as exc:
                logger.warning("Generation failed for conversation %s: %s", conversation_id, exc)
                error = "generation_failed"

            tail = processor.finish()
            if tail is not None:
                yield tail
            if error is None and not processor.outcome.visible_text.strip():
                error = "empty_response"

            done = self._done_event(plan, processor, input_tokens, output_tokens, error)
            if error is None:
                try:
                    await self._persist(plan, processor, done)
                except Exception as exc:
                    logger.warning("Persisting turn for conversation %s failed: %s", conversation_id, exc)
            await self._log_usage(plan, done)
            logger.info(
                "Turn done conversation=%s domain=%s category=%s crisis=%s reflection_offered=%s error=%s",
                conversation_id,
                done.domain,
                plan.domain.category.value,
                done.crisis_detected,
                done.reflection_offered,
                done.error,
            )
            delivered = True
            yield done
        finally:
            if not delivered:
                processor.finish()
                done = self._done_event(plan, processor, input_tokens, output_tokens, "client_disconnected")
                logger.info(
                    "Turn aborted conversation=%s output_tokens=%d (done event not delivered)",
                    conversation_id,
                    output_tokens,
                )
                await self._log_usage(plan, done)
