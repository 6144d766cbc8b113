# tests/test_adapters.py
from __future__ import annotations

import json

import httpx
import respx
from httpx import Response

from chathub.core.errors import PROVIDER_ERROR, UNSUPPORTED_PROVIDER
from chathub.providers import adapters
from chathub.providers.base import ChunkEvent, DoneEvent, ErrorEvent

MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hi"},
    {"role": "assistant", "content": "Hello"},
    {"role": "user", "content": "How are you?"},
]


def test_split_model_id() -> None:
    assert adapters.split_model_id("openai:gpt-4o") == ("openai", "gpt-4o")
    assert adapters.split_model_id("gemma:2b") == (None, "gemma:2b")
    assert adapters.split_model_id("anthropic:") == (None, "anthropic:")
    assert adapters.split_model_id("llama3") == (None, "llama3")


def test_split_model_id_prefers_local_catalog() -> None:
    local = lambda m: m in ("mistral:7b", "mistral:latest")  # noqa: E731
    assert adapters.split_model_id("mistral:7b", is_local=local) == (None, "mistral:7b")
    assert adapters.split_model_id("mistral:latest", is_local=local) == (None, "mistral:latest")
    assert adapters.split_model_id("mistral:mistral-small", is_local=local) == ("mistral", "mistral-small")
    assert adapters.split_model_id("openai:gpt-4o", is_local=lambda m: False) == ("openai", "gpt-4o")


def test_supported_providers() -> None:
    names = {p["provider"] for p in adapters.supported_providers()}
    assert {"openai", "anthropic", "gemini", "groq", "mistral"} <= names


@respx.mock
async def test_openai_chat() -> None:
    route = respx.post("https://api.openai.com/v1/chat/completions").mock(
        return_value=Response(
            200,
            json={
                "choices": [{"message": {"content": "Fine, thanks"}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13},
            },
        )
    )
    result = await adapters.send_chat_completion("openai", "gpt-4o", "sk-x", MESSAGES, {"max_tokens": 50})

    assert result.success
    assert adapters.get_adapter("openai").extract_text(result.data) == "Fine, thanks"
    assert result.usage == {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13}
    payload = json.loads(route.calls.last.request.content)
    assert payload["model"] == "gpt-4o"
    assert payload["max_tokens"] == 50
    assert payload["messages"][0] == {"role": "system", "content": "Be brief."}


@respx.mock
async def test_anthropic_chat_moves_system_prompt() -> None:
    route = respx.post("https://api.anthropic.com/v1/messages").mock(
        return_value=Response(
            200,
            json={
                "content": [{"type": "text", "text": "Good"}, {"type": "text", "text": "!"}],
                "usage": {"input_tokens": 7, "output_tokens": 2},
            },
        )
    )
    result = await adapters.send_chat_completion("anthropic", "claude-3-5-haiku", "ak-x", MESSAGES)

    assert result.success
    assert adapters.get_adapter("anthropic").extract_text(result.data) == "Good!"
    assert result.usage["total_tokens"] == 9
    request = route.calls.last.request
    assert request.headers["x-api-key"] == "ak-x"
    assert request.headers["anthropic-version"] == "2023-06-01"
    payload = json.loads(request.content)
    assert payload["system"] == "Be brief."
    assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]


@respx.mock
async def test_gemini_chat() -> None:
    route = respx.post(
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent"
    ).mock(
        return_value=Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Hi there"}]}}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
            },
        )
    )
    result = await adapters.send_chat_completion("gemini", "gemini-1.5-flash", "g-x", MESSAGES)

    assert result.success
    assert adapters.get_adapter("gemini").extract_text(result.data) == "Hi there"
    request = route.calls.last.request
    assert request.headers["x-goog-api-key"] == "g-x"
    payload = json.loads(request.content)
    assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]


@respx.mock
async def test_http_error_is_reported_not_raised() -> None:
    respx.post("https://api.mistral.ai/v1/chat/completions").mock(
        return_value=Response(429, json={"error": {"message": "Rate limit exceeded"}})
    )
    result = await adapters.send_chat_completion("mistral", "mistral-small", "k", MESSAGES)

    assert not result.success
    assert result.status_code == 429
    assert result.error == "Rate limit exceeded"


@respx.mock
async def test_unreachable_provider() -> None:
    respx.post("https://api.deepseek.com/v1/chat/completions").mock(side_effect=httpx.ConnectError("dns"))
    result = await adapters.send_chat_completion("deepseek", "deepseek-chat", "k", MESSAGES)

    assert not result.success
    assert "DeepSeek" in result.error


async def test_unsupported_provider() -> None:
    result = await adapters.validate_provider_key("nope", "k")
    assert not result.success
    assert "Unsupported provider" in result.error


@respx.mock
async def test_gemini_models_filtered_to_chat_capable() -> None:
    respx.get("https://generativelanguage.googleapis.com/v1beta/models").mock(
        return_value=Response(
            200,
            json={
                "models": [
                    {"name": "models/gemini-1.5-flash", "supportedGenerationMethods": ["generateContent"]},
                    {"name": "models/embedding-001", "supportedGenerationMethods": ["embedContent"]},
                ]
            },
        )
    )
    result = await adapters.get_provider_models("gemini", "g-x")
    assert [m["id"] for m in result.models] == ["gemini-1.5-flash"]


@respx.mock
async def test_hosted_generation_success() -> None:
    respx.post("https://api.groq.com/openai/v1/chat/completions").mock(
        return_value=Response(200, json={"choices": [{"message": {"content": "pong"}}]})
    )
    events = [ev async for ev in adapters.hosted_generation("groq", "llama", "k", [{"role": "user", "content": "ping"}])]

    assert events[0] == ChunkEvent("pong")
    assert isinstance(events[1], DoneEvent)
    assert events[1].text == "pong"
    # No usage from the provider: estimated
    assert events[1].usage["total_tokens"] == 2


@respx.mock
async def test_hosted_generation_failure() -> None:
    respx.post("https://api.together.xyz/v1/chat/completions").mock(
        return_value=Response(401, json={"error": "bad key"})
    )
    events = [ev async for ev in adapters.hosted_generation("together", "m", "k", [{"role": "user", "content": "x"}])]

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].error.code == PROVIDER_ERROR
    assert events[0].error.message == "bad key"
    assert events[0].error.details["status"] == 401


async def test_hosted_generation_unknown_provider() -> None:
    events = [ev async for ev in adapters.hosted_generation("nope", "m", "k", [])]
    assert len(events) == 1
    assert events[0].error.code == UNSUPPORTED_PROVIDER
