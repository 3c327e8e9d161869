from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from app.config import Settings
from app.services.openrouter import OpenRouterClient


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, OPENROUTER_API_KEY="sk-test", **overrides)


def test_complete_sends_plugins_and_parses_tool_calls() -> None:
    async def runner() -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["payload"] = json.loads(request.content)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "role": "assistant",
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_9",
                                        "type": "function",
                                        "function": {
                                            "name": "markAsWatched",
                                            "arguments": '{"title": "Dune", "who": "both"}',
                                        },
                                    },
                                    {"function": {"name": "broken", "arguments": "{oops"}},
                                ],
                            }
                        }
                    ]
                },
            )

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://openrouter.example"
        ) as http_client:
            client = OpenRouterClient(_settings(), http_client)
            completion = await client.complete(
                [{"role": "user", "content": "hi"}],
                tools=[{"type": "function", "function": {"name": "markAsWatched"}}],
                web_search=True,
            )

        assert seen["auth"] == "Bearer sk-test"
        assert seen["payload"]["plugins"] == [{"id": "web"}]
        assert seen["payload"]["model"] == "google/gemini-2.5-flash"
        assert completion.text == ""
        assert completion.tool_calls[0].id == "call_9"
        assert completion.tool_calls[0].arguments == {"title": "Dune", "who": "both"}
        assert completion.tool_calls[1].name == "broken"
        assert completion.tool_calls[1].arguments == {}

    asyncio.run(runner())


def test_prompt_returns_text_and_surfaces_errors() -> None:
    async def runner() -> None:
        replies = [
            httpx.Response(200, json={"choices": [{"message": {"content": "Hola"}}]}),
            httpx.Response(429, text="rate limited"),
            httpx.Response(200, json={"choices": []}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return replies.pop(0)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://openrouter.example"
        ) as http_client:
            client = OpenRouterClient(_settings(), http_client)
            assert await client.prompt("hi", system="be brief") == "Hola"
            with pytest.raises(RuntimeError):
                await client.prompt("hi")
            with pytest.raises(RuntimeError):
                await client.prompt("hi")

    asyncio.run(runner())


def test_missing_key_is_reported_without_network() -> None:
    async def runner() -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("Network access should not be triggered")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = OpenRouterClient(Settings(_env_file=None, OPENROUTER_API_KEY=""), http_client)
            assert not client.configured
            with pytest.raises(RuntimeError):
                await client.prompt("hi")

    asyncio.run(runner())
