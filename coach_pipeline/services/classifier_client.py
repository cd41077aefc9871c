from __future__ import annotations

import asyncio
import json
import random
import re
from typing import Any, Dict, List

import aiohttp


def extract_json_object(text: str) -> Dict[str, Any] | None:
    """First JSON object in a model reply, tolerating code fences and surrounding prose."""
    cleaned = text.strip()
    if not cleaned:
        return None

    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", cleaned, flags=re.IGNORECASE)
    if fenced:
        cleaned = fenced.group(1).strip()

    start = cleaned.find("{")
    while start != -1:
        try:
            parsed, _ = json.JSONDecoder().raw_decode(cleaned[start:])
        except json.JSONDecodeError:
            start = cleaned.find("{", start + 1)
            continue
        return parsed if isinstance(parsed, dict) else None
    return None


class ClassifierClient:
    """Small OpenAI-compatible chat-completions client used for single-purpose JSON classifications."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, payload: Dict[str, Any], retries: int = 2) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload, headers=headers) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    retriable = response.status in {408, 409, 429, 500, 502, 503, 504}
                    if not retriable:
                        raise RuntimeError(f"Classifier error {response.status}: {text}")
                    last_error = RuntimeError(f"Classifier retriable error {response.status}: {text}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise RuntimeError(f"Classifier request failed after retries: {last_error}")
        raise RuntimeError("Classifier request failed without explicit error")

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.0, max_tokens: int = 200) -> str:
        data = await self._request(
            {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
            }
        )
        choices = data.get("choices") or []
        if not choices:
            raise RuntimeError("Classifier returned no choices")
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise RuntimeError("Classifier returned empty content")
        return content

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.0,
        max_tokens: int = 200,
    ) -> Dict[str, Any] | None:
        strict_messages = list(messages)
        strict_messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {schema_hint}"
                ),
            }
        )
        raw = await self.chat(strict_messages, temperature=temperature, max_tokens=max_tokens)
        return extract_json_object(raw)
