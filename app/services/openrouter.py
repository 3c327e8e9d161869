"""Integration helpers for the OpenRouter API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Completion:
    """Text and tool calls returned by a single completion."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    message: dict[str, Any] = field(default_factory=dict)


class OpenRouterClient:
    """Client responsible for talking to OpenRouter's chat completions."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.openrouter_api_key)

    async def complete(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        web_search: bool = False,
        temperature: float | None = None,
        model: str | None = None,
    ) -> Completion:
        """Send a conversation to the model and return its reply.

        ``web_search`` enables OpenRouter's web plugin so the answer is
        grounded on live search results.
        """

        api_key = self._settings.openrouter_api_key
        if not api_key:
            raise RuntimeError("OpenRouter API key is required for completions")

        payload: dict[str, Any] = {
            "model": model or self._settings.openrouter_model,
            "messages": list(messages),
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if tools:
            payload["tools"] = list(tools)
        if web_search:
            payload["plugins"] = [{"id": "web"}]

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://github.com/watchwhisper/watchwhisper",
            "X-Title": self._settings.app_name,
        }

        response = await self._client.post("/chat/completions", json=payload, headers=headers)
        if response.status_code >= 400:
            raise RuntimeError(response.text)

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise RuntimeError("Model returned no choices")
        message = choices[0].get("message") or {}
        content = message.get("content")
        text = content if isinstance(content, str) else ""
        tool_calls = self._parse_tool_calls(message.get("tool_calls"))
        if not text and not tool_calls:
            raise RuntimeError("Model response missing content")
        return Completion(text=text, tool_calls=tool_calls, message=message)

    async def prompt(
        self,
        prompt: str,
        *,
        system: str | None = None,
        web_search: bool = False,
    ) -> str:
        """Single-turn helper returning only the reply text."""

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        completion = await self.complete(messages, web_search=web_search)
        return completion.text

    @staticmethod
    def _parse_tool_calls(raw_calls: object) -> list[ToolCall]:
        if not isinstance(raw_calls, list):
            return []
        calls: list[ToolCall] = []
        for index, entry in enumerate(raw_calls):
            if not isinstance(entry, dict):
                continue
            function = entry.get("function") or {}
            name = function.get("name")
            if not isinstance(name, str) or not name:
                continue
            raw_arguments = function.get("arguments")
            arguments: dict[str, Any] = {}
            if isinstance(raw_arguments, dict):
                arguments = raw_arguments
            elif isinstance(raw_arguments, str) and raw_arguments.strip():
                try:
                    parsed = json.loads(raw_arguments)
                except json.JSONDecodeError:
                    logger.warning("Discarding malformed tool arguments for %s", name)
                    parsed = {}
                if isinstance(parsed, dict):
                    arguments = parsed
            call_id = str(entry.get("id") or f"call_{index}")
            calls.append(ToolCall(id=call_id, name=name, arguments=arguments))
        return calls
