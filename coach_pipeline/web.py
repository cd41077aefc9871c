from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import Settings
from .domains.registry import DomainRegistry
from .models import ConversationType, StreamEvent
from .pipeline.turn import CoachingTurnPipeline
from .services.anthropic_client import AnthropicStreamingClient
from .services.classifier_client import ClassifierClient
from .store import CoachStore

logger = logging.getLogger("coach_pipeline.web")

MAX_MESSAGE_CHARS = 8000


class AppState:
    settings: Settings | None = None
    store: CoachStore | None = None
    generator: AnthropicStreamingClient | None = None
    classifier: ClassifierClient | None = None
    registry: DomainRegistry | None = None
    pipeline: CoachingTurnPipeline | None = None


def encode_sse(event: StreamEvent) -> bytes:
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n".encode("utf-8")


def _error(status_code: int, error: str, user_message: str) -> JSONResponse:
    return JSONResponse({"error": error, "user_message": user_message}, status_code=status_code)


async def _build_state(state: AppState) -> None:
    settings = Settings.from_env()
    settings.validate()
    store = CoachStore(settings.sqlite_path)
    await store.init()

    generator = AnthropicStreamingClient(
        api_key=settings.anthropic_api_key,
        model=settings.generation_model,
        timeout_seconds=settings.generation_timeout_seconds,
        temperature=settings.generation_temperature,
        max_tokens=settings.generation_max_tokens,
        base_url=settings.anthropic_base_url,
    )
    await generator.start()
    classifier = ClassifierClient(
        api_key=settings.classifier_api_key,
        model=settings.classifier_model,
        timeout_seconds=settings.classifier_timeout_seconds,
        base_url=settings.classifier_base_url,
    )
    if classifier.enabled:
        await classifier.start()
    else:
        logger.warning("CLASSIFIER_API_KEY is not set; safety tier 2 and domain classification are disabled")

    registry = DomainRegistry(settings.domain_config_dir)
    state.settings = settings
    state.store = store
    state.generator = generator
    state.classifier = classifier
    state.registry = registry
    state.pipeline = CoachingTurnPipeline.from_settings(
        settings,
        store,
        generator,
        classifier if classifier.enabled else None,
        registry,
    )
    logger.info(
        "Coaching pipeline ready store=%s model=%s classifier=%s",
        store.backend_name,
        settings.generation_model,
        settings.classifier_model if classifier.enabled else "disabled",
    )


def create_app(state: AppState | None = None) -> FastAPI:
    """HTTP surface. A pre-populated ``state`` skips building clients from the environment."""
    app_state = state or AppState()
    prebuilt = app_state.pipeline is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if not prebuilt:
            await _build_state(app_state)
        yield
        if not prebuilt:
            if app_state.generator is not None:
                await app_state.generator.close()
            if app_state.classifier is not None:
                await app_state.classifier.close()

    app = FastAPI(title="Coaching Turn Pipeline", lifespan=lifespan)
    app.state.coach = app_state

    async def _read_json(request: Request) -> Dict[str, Any] | None:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @app.post("/chat-stream")
    async def chat_stream(request: Request):
        if app_state.pipeline is None or app_state.store is None:
            return _error(503, "not_ready", "The coach is starting up. Please try again in a moment.")
        user_id = (request.headers.get("x-user-id") or "").strip()
        if not user_id:
            return _error(401, "missing_user", "Please sign in to continue.")

        body = await _read_json(request)
        if body is None:
            return _error(400, "invalid_body", "Something went wrong with that message. Please try again.")
        message = str(body.get("message") or "").strip()
        conversation_id = str(body.get("conversation_id") or body.get("conversationId") or "").strip()
        if not message or not conversation_id:
            return _error(400, "invalid_request", "Please type a message to send.")
        if len(message) > MAX_MESSAGE_CHARS:
            return _error(400, "message_too_long", "That message is a bit long. Could you shorten it?")

        state = await app_state.store.get_conversation(conversation_id)
        if state is None or state.user_id != user_id:
            return _error(404, "conversation_not_found", "I couldn't find that conversation.")

        pipeline = app_state.pipeline

        async def event_stream() -> AsyncIterator[bytes]:
            async for event in pipeline.run_turn(user_id, conversation_id, message):
                yield encode_sse(event)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/conversations")
    async def create_conversation(request: Request):
        if app_state.store is None:
            return _error(503, "not_ready", "The coach is starting up. Please try again in a moment.")
        user_id = (request.headers.get("x-user-id") or "").strip()
        if not user_id:
            return _error(401, "missing_user", "Please sign in to continue.")
        body = await _read_json(request) or {}
        conversation_type = ConversationType.parse(body.get("type"))
        try:
            state = await app_state.store.create_conversation(
                user_id,
                conversation_id=str(body.get("conversation_id") or body.get("conversationId") or "").strip() or None,
                title=str(body.get("title") or "").strip() or None,
                conversation_type=conversation_type,
            )
        except RuntimeError:
            return _error(409, "conversation_conflict", "That conversation already belongs to someone else.")
        return JSONResponse(
            {"conversation_id": state.conversation_id, "type": state.type.value, "title": state.title},
            status_code=201,
        )

    @app.get("/health")
    async def health():
        if app_state.store is None:
            return JSONResponse({"status": "starting"}, status_code=503)
        try:
            await app_state.store.ping()
        except Exception as exc:
            logger.exception("Health check failed")
            return JSONResponse({"status": "error", "store": str(exc)}, status_code=503)
        registry = app_state.registry
        return {
            "status": "ok",
            "store": app_state.store.backend_name,
            "domains": sorted(registry.all()) if registry is not None else [],
        }

    return app


app = create_app()
