# tests/test_ollama_client.py
from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import respx
from httpx import Response

from chathub.core.errors import (
    IDLE_TIMEOUT,
    PROMPT_REJECTED,
    RUNTIME_HTTP_ERROR,
    RUNTIME_UNREACHABLE,
    TOTAL_TIMEOUT,
)
from chathub.providers.base import ChunkEvent, DoneEvent, ErrorEvent
from chathub.providers.ollama import OllamaClient, run_model_stream
from sse_helpers import ndjson

BASE = "http://127.0.0.1:11434"
GENERATE = f"{BASE}/api/generate"


async def collect(client: OllamaClient, model: str = "gemma:2b", prompt: str = "Hi"):
    return [ev async for ev in client.stream_generate(model, prompt)]


def slow_lines(lines, delay: float, first_delay: float = 0.0):
    async def handler(request):
        async def body():
            if first_delay:
                await asyncio.sleep(first_delay)
            for ln in lines:
                yield json.dumps(ln).encode("utf-8") + b"\n"
                await asyncio.sleep(delay)
        return Response(200, content=body())
    return handler


@respx.mock
async def test_stream_chunks_then_done() -> None:
    route = respx.post(GENERATE).mock(
        return_value=Response(
            200,
            content=ndjson(
                {"response": "Hello", "done": False},
                {"response": " world", "done": False},
                {"response": "", "done": True, "prompt_eval_count": 3, "eval_count": 2},
            ),
        )
    )
    events = await collect(OllamaClient(BASE))

    assert route.called
    sent = json.loads(route.calls.last.request.content)
    assert sent == {"model": "gemma:2b", "prompt": "Hi", "stream": True}
    assert events[:2] == [ChunkEvent("Hello"), ChunkEvent(" world")]
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].text == "Hello world"
    assert events[-1].usage == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
    assert len(events) == 3


@respx.mock
async def test_ansi_codes_and_controls_are_stripped() -> None:
    respx.post(GENERATE).mock(
        return_value=Response(
            200,
            content=ndjson(
                {"response": "\x1b[?25lHe\x1b[0m", "done": False},
                {"response": "\x07llo\n", "done": False},
                {"response": "\x1b[2K", "done": False},
                {"done": True},
            ),
        )
    )
    events = await collect(OllamaClient(BASE))

    chunks = [e.text for e in events if isinstance(e, ChunkEvent)]
    assert chunks == ["He", "llo\n"]
    assert events[-1].text == "Hello\n"


@respx.mock
async def test_malformed_lines_are_skipped() -> None:
    body = b'{"response": "A", "done": false}\nnot json at all\n\n[1, 2]\n{"response": "B", "done": true}\n'
    respx.post(GENERATE).mock(return_value=Response(200, content=body))
    events = await collect(OllamaClient(BASE))

    assert [e.text for e in events if isinstance(e, ChunkEvent)] == ["A", "B"]
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].text == "AB"


@respx.mock
async def test_nothing_after_done_is_delivered() -> None:
    respx.post(GENERATE).mock(
        return_value=Response(
            200,
            content=ndjson(
                {"response": "ok", "done": True},
                {"response": "late", "done": False},
                {"done": True},
            ),
        )
    )
    events = await collect(OllamaClient(BASE))

    assert events == [ChunkEvent("ok"), events[-1]]
    assert isinstance(events[-1], DoneEvent)


@respx.mock
async def test_eof_without_done_completes() -> None:
    respx.post(GENERATE).mock(return_value=Response(200, content=ndjson({"response": "partial"})))
    events = await collect(OllamaClient(BASE))

    assert isinstance(events[-1], DoneEvent)
    assert events[-1].text == "partial"


@respx.mock
async def test_http_error_status() -> None:
    respx.post(GENERATE).mock(return_value=Response(500, text="boom"))
    events = await collect(OllamaClient(BASE))

    assert len(events) == 1
    err = events[0].error
    assert err.code == RUNTIME_HTTP_ERROR
    assert err.details["status"] == 500
    assert err.details["body"] == "boom"


@respx.mock
async def test_error_field_in_stream() -> None:
    respx.post(GENERATE).mock(
        return_value=Response(200, content=ndjson({"response": "x"}, {"error": "model 'gemma:2b' not found"}))
    )
    events = await collect(OllamaClient(BASE))

    assert events[0] == ChunkEvent("x")
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].error.code == RUNTIME_HTTP_ERROR
    assert "not found" in events[-1].error.details["reason"]


@respx.mock
async def test_connection_refused() -> None:
    respx.post(GENERATE).mock(side_effect=httpx.ConnectError("connection refused"))
    events = await collect(OllamaClient(BASE))

    assert len(events) == 1
    err = events[0].error
    assert err.code == RUNTIME_UNREACHABLE
    assert any("running" in s for s in err.suggestions)


@pytest.mark.parametrize("prompt", ["", "   ", "x" * 1001])
async def test_prompt_rejected_before_any_request(prompt) -> None:
    with respx.mock(assert_all_called=False) as mock:
        route = mock.post(GENERATE)
        events = await collect(OllamaClient(BASE, prompt_max_chars=1000), prompt=prompt)
    assert not route.called
    assert len(events) == 1
    assert events[0].error.code == PROMPT_REJECTED


@respx.mock
async def test_idle_timeout_after_silence() -> None:
    respx.post(GENERATE).mock(side_effect=slow_lines([{"response": "a"}, {"response": "b"}], delay=1.0))
    client = OllamaClient(BASE, idle_timeout_sec=0.2, total_timeout_sec=5.0)
    events = await collect(client)

    assert events[0] == ChunkEvent("a")
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].error.code == IDLE_TIMEOUT
    assert len(events) == 2


@respx.mock
async def test_idle_timer_restarts_on_every_line() -> None:
    lines = [{"response": str(i)} for i in range(6)] + [{"done": True}]
    respx.post(GENERATE).mock(side_effect=slow_lines(lines, delay=0.1))
    client = OllamaClient(BASE, idle_timeout_sec=0.3, total_timeout_sec=5.0)
    events = await collect(client)

    # Total silence would exceed the idle window, single gaps never do
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].text == "012345"


@respx.mock
async def test_total_timeout_while_tokens_keep_coming() -> None:
    lines = [{"response": "t"} for _ in range(100)]
    respx.post(GENERATE).mock(side_effect=slow_lines(lines, delay=0.05))
    client = OllamaClient(BASE, idle_timeout_sec=0.3, total_timeout_sec=0.5)
    events = await collect(client)

    assert any(isinstance(e, ChunkEvent) for e in events)
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].error.code == TOTAL_TIMEOUT
    assert events[-1].error.details["timeout_sec"] == 0.5


@respx.mock
async def test_run_model_stream_calls_close_once() -> None:
    respx.post(GENERATE).mock(
        return_value=Response(200, content=ndjson({"response": "a"}, {"response": "b", "done": True}, {"response": "c"}))
    )
    seen = {"chunks": [], "close": [], "error": []}

    async def on_chunk(text):
        seen["chunks"].append(text)

    await run_model_stream(
        OllamaClient(BASE),
        "gemma:2b",
        "Hi",
        on_chunk,
        lambda text: seen["close"].append(text),
        lambda err: seen["error"].append(err),
    )

    assert seen["chunks"] == ["a", "b"]
    assert seen["close"] == ["ab"]
    assert seen["error"] == []


@respx.mock
async def test_run_model_stream_calls_error_once() -> None:
    respx.post(GENERATE).mock(return_value=Response(503, text="busy"))
    seen = {"close": [], "error": []}

    await run_model_stream(
        OllamaClient(BASE),
        "gemma:2b",
        "Hi",
        lambda text: None,
        lambda text: seen["close"].append(text),
        lambda err: seen["error"].append(err.code),
    )

    assert seen == {"close": [], "error": [RUNTIME_HTTP_ERROR]}


@respx.mock
async def test_ping_lists_models() -> None:
    respx.get(f"{BASE}/api/tags").mock(
        return_value=Response(200, json={"models": [{"name": "gemma:2b"}, {"name": "phi:2.7b"}]})
    )
    assert await OllamaClient(BASE).ping() == {"status": "ok", "models": ["gemma:2b", "phi:2.7b"]}


@respx.mock
async def test_ping_reports_unreachable_runtime() -> None:
    respx.get(f"{BASE}/api/tags").mock(side_effect=httpx.ConnectError("connection refused"))
    result = await OllamaClient(BASE).ping()
    assert result["status"] == "error"
    assert "refused" in result["detail"]
