# chathub/providers/ollama.py
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from chathub.core.errors import (
    ChatError,
    idle_timeout,
    prompt_rejected,
    runtime_http_error,
    runtime_stream_error,
    runtime_unreachable,
    total_timeout,
)
from chathub.core.settings import get_settings
from chathub.orchestration.redactor import clean_fragment
from chathub.providers.base import ChunkEvent, DoneEvent, ErrorEvent, GenerationEvent
from chathub.utils.tokens import normalize_usage

log = logging.getLogger("chathub.runtime")


class OllamaClient:
    """Token streaming against a local Ollama server (``POST /api/generate``).

    Two timers guard every generation: the idle timer restarts whenever a line
    arrives, the total timer starts when the request is sent and is never
    restarted. Both are plain deadlines checked around each read, so nothing
    outlives the generator.
    """

    def __init__(
        self,
        base_url: str,
        *,
        idle_timeout_sec: float = 300.0,
        total_timeout_sec: float = 600.0,
        connect_timeout_sec: float = 10.0,
        prompt_max_chars: int = 1000,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.idle_timeout_sec = idle_timeout_sec
        self.total_timeout_sec = total_timeout_sec
        self.connect_timeout_sec = connect_timeout_sec
        self.prompt_max_chars = prompt_max_chars

    def check_prompt(self, prompt: Any) -> Optional[ChatError]:
        if not isinstance(prompt, str) or not prompt.strip():
            return prompt_rejected("Prompt must be a non-empty string.")
        if len(prompt) > self.prompt_max_chars:
            return prompt_rejected(f"Prompt is too long. Maximum {self.prompt_max_chars} characters.")
        return None

    async def _await_within(self, aw: Awaitable[Any], deadline: float) -> Any:
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            if inspect.iscoroutine(aw):
                aw.close()
            raise total_timeout(self.total_timeout_sec)
        wait = min(self.idle_timeout_sec, remaining)
        try:
            return await asyncio.wait_for(aw, timeout=wait)
        except asyncio.TimeoutError:
            if remaining <= self.idle_timeout_sec:
                raise total_timeout(self.total_timeout_sec) from None
            raise idle_timeout(self.idle_timeout_sec) from None

    async def stream_generate(self, model: str, prompt: str) -> AsyncIterator[GenerationEvent]:
        """Yield ChunkEvent per text fragment, then exactly one DoneEvent or ErrorEvent."""
        rejected = self.check_prompt(prompt)
        if rejected is not None:
            yield ErrorEvent(rejected)
            return

        url = f"{self.base_url}/api/generate"
        payload: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": True}
        collected: List[str] = []
        # Reads are bounded by our own idle/total deadlines, not by httpx
        timeout = httpx.Timeout(self.connect_timeout_sec, read=None)
        deadline = asyncio.get_running_loop().time() + self.total_timeout_sec
        log.info({"event": "runtime.generate.start", "model": model, "prompt_chars": len(prompt)})

        async with httpx.AsyncClient(timeout=timeout) as client:
            resp: Optional[httpx.Response] = None
            try:
                request = client.build_request("POST", url, json=payload)
                resp = await self._await_within(client.send(request, stream=True), deadline)
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    yield ErrorEvent(runtime_http_error(resp.status_code, body))
                    return

                lines = resp.aiter_lines()
                while True:
                    try:
                        line = await self._await_within(anext(lines), deadline)
                    except StopAsyncIteration:
                        text = "".join(collected)
                        log.warning({"event": "runtime.generate.eof_without_done", "model": model})
                        yield DoneEvent(text, normalize_usage(None, prompt, text))
                        return
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        log.warning({"event": "runtime.generate.bad_line", "model": model, "line": line[:200]})
                        continue
                    if not isinstance(record, dict):
                        log.warning({"event": "runtime.generate.bad_line", "model": model, "line": line[:200]})
                        continue
                    if record.get("error"):
                        yield ErrorEvent(runtime_stream_error(str(record["error"])))
                        return
                    fragment = record.get("response")
                    if isinstance(fragment, str) and fragment:
                        clean = clean_fragment(fragment)
                        if clean:
                            collected.append(clean)
                            yield ChunkEvent(clean)
                    if record.get("done"):
                        text = "".join(collected)
                        usage = normalize_usage(record if "eval_count" in record else None, prompt, text)
                        log.info({"event": "runtime.generate.done", "model": model, "chars": len(text)})
                        yield DoneEvent(text, usage)
                        return
            except ChatError as err:
                log.warning({"event": "runtime.generate.failed", "model": model, "code": err.code})
                yield ErrorEvent(err)
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                log.warning({"event": "runtime.generate.unreachable", "model": model, "error": str(exc)})
                yield ErrorEvent(runtime_unreachable(self.base_url, exc))
            except httpx.RequestError as exc:
                log.warning({"event": "runtime.generate.transport_error", "model": model, "error": str(exc)})
                yield ErrorEvent(runtime_stream_error(str(exc) or exc.__class__.__name__))
            finally:
                if resp is not None:
                    await resp.aclose()

    async def list_local_models(self) -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(timeout=5.0) as client:
            r = await client.get(f"{self.base_url}/api/tags")
            r.raise_for_status()
            return (r.json() or {}).get("models") or []

    async def ping(self) -> Dict[str, Any]:
        try:
            models = await self.list_local_models()
        except httpx.HTTPError as exc:
            log.warning({"event": "runtime.ping.failed", "error": str(exc)})
            return {"status": "error", "detail": str(exc) or exc.__class__.__name__}
        return {"status": "ok", "models": [m.get("name") for m in models]}


async def _call(fn: Callable[..., Any], *args: Any) -> None:
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


async def run_model_stream(
    client: OllamaClient,
    model: str,
    prompt: str,
    on_chunk: Callable[[str], Any],
    on_close: Callable[[str], Any],
    on_error: Callable[[ChatError], Any],
) -> None:
    """Callback flavour of :meth:`OllamaClient.stream_generate`.

    Exactly one of ``on_close`` / ``on_error`` is invoked, once.
    """
    finished = False
    events = client.stream_generate(model, prompt)
    try:
        async for ev in events:
            if finished:
                break
            if isinstance(ev, ChunkEvent):
                await _call(on_chunk, ev.text)
            elif isinstance(ev, DoneEvent):
                finished = True
                await _call(on_close, ev.text)
            elif isinstance(ev, ErrorEvent):
                finished = True
                await _call(on_error, ev.error)
    finally:
        await events.aclose()


def get_ollama_client() -> OllamaClient:
    settings = get_settings()
    if not settings.ollama_base_url:
        raise RuntimeError("OLLAMA_BASE_URL is not configured")
    return OllamaClient(
        base_url=str(settings.ollama_base_url),
        idle_timeout_sec=settings.stream_idle_timeout_sec,
        total_timeout_sec=settings.stream_total_timeout_sec,
        connect_timeout_sec=settings.stream_connect_timeout_sec,
        prompt_max_chars=settings.runtime_prompt_max_chars,
    )
