from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List

import aiohttp

logger = logging.getLogger("coach_pipeline.generation")

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504, 529}


class GenerationError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class GenerationChunk:
    text: str = ""
    input_tokens: int | None = None
    output_tokens: int | None = None


class AnthropicStreamingClient:
    """Streams a completion from the Anthropic Messages API as text and usage chunks."""

    api_version = "2023-06-01"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_tokens: int,
        base_url: str = "https://api.anthropic.com",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds, sock_read=timeout_seconds)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    def _payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": [
                {"role": message["role"], "content": message["content"]}
                for message in messages
                if message.get("content", "").strip()
            ],
            "stream": True,
        }

    @staticmethod
    def parse_event(data: Dict[str, Any]) -> GenerationChunk | None:
        event_type = data.get("type")
        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            text = delta.get("text")
            if isinstance(text, str) and text:
                return GenerationChunk(text=text)
            return None
        if event_type == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            if "input_tokens" in usage:
                return GenerationChunk(input_tokens=int(usage.get("input_tokens") or 0))
            return None
        if event_type == "message_delta":
            usage = data.get("usage") or {}
            if "output_tokens" in usage:
                return GenerationChunk(output_tokens=int(usage.get("output_tokens") or 0))
            return None
        if event_type == "error":
            error = data.get("error") or {}
            raise GenerationError(f"Anthropic stream error: {error.get('type')}: {error.get('message')}")
        return None

    async def _open(self, payload: Dict[str, Any], retries: int = 3) -> aiohttp.ClientResponse:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = f"{self.base_url}/v1/messages"
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                response = await self._session.post(url, json=payload, headers=self._headers())
                if response.status == 200:
                    return response
                text = await response.text()
                response.release()
                if response.status not in _RETRIABLE_STATUSES:
                    raise GenerationError(f"Anthropic error {response.status}: {text}")
                last_error = GenerationError(f"Anthropic retriable error {response.status}: {text}")
            except asyncio.CancelledError:
                raise
            except GenerationError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        raise GenerationError(f"Anthropic request failed after retries: {last_error}")

    async def stream_chat(self, system_prompt: str, messages: List[Dict[str, str]]) -> AsyncIterator[GenerationChunk]:
        response = await self._open(self._payload(system_prompt, messages))
        try:
            async for raw_line in response.content:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line.startswith("data:"):
                    continue
                data_text = line[5:].strip()
                if not data_text or data_text == "[DONE]":
                    continue
                try:
                    data = json.loads(data_text)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed generation event")
                    continue
                chunk = self.parse_event(data)
                if chunk is not None:
                    yield chunk
        finally:
            response.release()
