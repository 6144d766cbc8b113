# chathub/orchestration/chat_turn.py
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from chathub.core.errors import (
    CLIENT_DISCONNECTED,
    CONVERSATION_NOT_FOUND,
    INTERNAL_ERROR,
    INVALID_CONVERSATION_ID,
    INVALID_MODEL_TYPE,
    INVALID_PROMPT,
    MISSING_MODEL_ID,
    PROMPT_TOO_LONG,
    PROVIDER_KEY_MISSING,
    STREAM_ENDED,
    ChatError,
)
from chathub.core.settings import AppSettings, get_settings
from chathub.providers import adapters
from chathub.providers.base import ChunkEvent, DoneEvent, ErrorEvent, GenerationEvent, GenerationSource
from chathub.providers.model_registry import ModelRegistry, model_registry
from chathub.providers.ollama import OllamaClient, get_ollama_client
from chathub.storage import chat_store, provider_keys

log = logging.getLogger("chathub.stream")

DISCONNECT_REASON = "client disconnected"
DISCONNECT_MARKER = "\n\n[Client disconnected]"


class TurnState(str, Enum):
    INIT = "init"
    RESOLVING_CONVERSATION = "resolving_conversation"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class TerminalLatch:
    """First caller wins; every later claim is refused."""

    def __init__(self) -> None:
        self.outcome: Optional[TurnState] = None

    def claim(self, outcome: TurnState) -> bool:
        if self.outcome is not None:
            return False
        self.outcome = outcome
        return True

    @property
    def settled(self) -> bool:
        return self.outcome is not None


def sse_format(event: Optional[str], data: Dict[str, Any]) -> bytes:
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


def error_marker(message: str) -> str:
    return f"\n\n[Error: {message}]"


@dataclass
class TurnInput:
    model_id: str
    prompt: str
    conversation_id: Optional[str] = None


def validate_turn_input(
    model_id: Any,
    prompt: Any,
    conversation_id: Any = None,
    settings: Optional[AppSettings] = None,
) -> TurnInput:
    """Shape checks done before anything is persisted or sent anywhere."""
    settings = settings or get_settings()
    if model_id is None or (isinstance(model_id, str) and not model_id.strip()):
        raise ChatError(MISSING_MODEL_ID, "modelId is required.", suggestions=["Pick a model from the list"])
    if not isinstance(model_id, str):
        raise ChatError(INVALID_MODEL_TYPE, "modelId must be a string.")
    if not isinstance(prompt, str):
        raise ChatError(INVALID_PROMPT, "prompt must be a string.")
    if not prompt.strip():
        raise ChatError(INVALID_PROMPT, "prompt is required.")
    limit = settings.effective_prompt_max_chars
    if len(prompt) > limit:
        raise ChatError(
            PROMPT_TOO_LONG,
            f"Prompt too long (max {limit} chars).",
            suggestions=["Shorten the prompt", "Split the question into several messages"],
            details={"max_chars": limit, "length": len(prompt)},
        )
    if conversation_id is not None and not isinstance(conversation_id, str):
        raise ChatError(INVALID_CONVERSATION_ID, "conversationId must be a string.")
    cid = conversation_id.strip() if isinstance(conversation_id, str) else None
    return TurnInput(model_id=model_id.strip(), prompt=prompt, conversation_id=cid or None)


class ChatTurn:
    """One chat turn relayed to the client as Server-Sent Events.

    ``prepare()`` runs the synchronous checks that may still become an HTTP
    status. ``events()`` is the SSE body: it resolves the model, persists the
    user message and the placeholder, relays chunks and settles the message
    exactly once, whichever of completion, failure or disconnect comes first.
    """

    def __init__(
        self,
        user_id: str,
        turn: TurnInput,
        *,
        registry: ModelRegistry = model_registry,
        runtime: Optional[OllamaClient] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.user_id = user_id
        self.turn = turn
        self.registry = registry
        self.settings = settings or get_settings()
        self._runtime = runtime
        self.state = TurnState.INIT
        self.latch = TerminalLatch()
        self.conversation_id: Optional[str] = None
        self.message_id: Optional[str] = None
        self.model_name: Optional[str] = None
        self.started = time.monotonic()

    @property
    def runtime(self) -> OllamaClient:
        if self._runtime is None:
            self._runtime = get_ollama_client()
        return self._runtime

    def prepare(self) -> None:
        cid = self.turn.conversation_id
        if cid is not None:
            conv = chat_store.get_conversation(cid, self.user_id)
            if conv is None:
                raise ChatError(
                    CONVERSATION_NOT_FOUND,
                    "Conversation not found or access denied",
                    status_code=404,
                )
            self.conversation_id = conv.id

    # Model routing

    def _open_source(self) -> GenerationSource:
        """Validate the model and return a factory for its event stream.

        Raises ChatError before any row is written.
        """
        provider, provider_model = adapters.split_model_id(self.turn.model_id, is_local=self.registry.is_local)
        if provider is None:
            model_id = self.registry.resolve(self.turn.model_id)
            self.model_name = self.registry.display_name(model_id)
            return lambda: self.runtime.stream_generate(model_id, self.turn.prompt)

        api_key = provider_keys.get_active_key(self.user_id, provider)
        if not api_key:
            raise ChatError(
                PROVIDER_KEY_MISSING,
                f"No active API key found for provider: {provider}",
                suggestions=[f"Add a {provider} API key in settings"],
                details={"provider": provider},
            )
        adapter = adapters.get_adapter(provider)
        self.model_name = f"{adapter.name} {provider_model}" if adapter else self.turn.model_id

        def _hosted() -> AsyncIterator[GenerationEvent]:
            history = chat_store.get_history_for_provider(
                self.conversation_id, limit=self.settings.history_max_messages
            )
            provider_keys.touch_key_usage(self.user_id, provider)
            return adapters.hosted_generation(provider, provider_model, api_key, history)

        return _hosted

    # Terminal transitions (synchronous: they must also run from a closing generator)

    def _settle_done(self, text: str, usage: Optional[Dict[str, int]]) -> bool:
        if not self.latch.claim(TurnState.DONE):
            return False
        self.state = TurnState.FINALIZING
        try:
            chat_store.finalize_model_message(self.message_id)
            if usage:
                chat_store.record_usage(self.message_id, usage)
            chat_store.finalize_conversation_touch(self.conversation_id)
        except Exception:  # noqa: BLE001
            log.error({"event": "turn.finalize_failed", "message_id": self.message_id}, exc_info=True)
        self.state = TurnState.DONE
        self._log_end(chars=len(text))
        return True

    def _settle_error(self, err: ChatError) -> bool:
        if not self.latch.claim(TurnState.ERROR):
            return False
        self.state = TurnState.ERROR
        if self.message_id is not None:
            try:
                chat_store.mark_model_message_error(
                    self.message_id, f"{err.code}: {err.message}", marker=error_marker(err.message)
                )
                chat_store.finalize_conversation_touch(self.conversation_id)
            except Exception:  # noqa: BLE001
                log.error({"event": "turn.mark_error_failed", "message_id": self.message_id}, exc_info=True)
        self._log_end(code=err.code)
        return True

    def cancel(self) -> bool:
        """The client went away; record it without touching the socket."""
        if not self.latch.claim(TurnState.CANCELLED):
            return False
        self.state = TurnState.CANCELLED
        if self.message_id is not None:
            try:
                chat_store.mark_model_message_error(self.message_id, DISCONNECT_REASON, marker=DISCONNECT_MARKER)
            except Exception:  # noqa: BLE001
                log.error({"event": "turn.cancel_record_failed", "message_id": self.message_id}, exc_info=True)
        self._log_end(code=CLIENT_DISCONNECTED)
        return True

    def _log_end(self, **extra: Any) -> None:
        log.info(
            {
                "event": "turn.end",
                "outcome": self.latch.outcome.value if self.latch.outcome else None,
                "conversation_id": self.conversation_id,
                "message_id": self.message_id,
                "model": self.turn.model_id,
                "duration_ms": round((time.monotonic() - self.started) * 1000, 2),
                **extra,
            }
        )

    # Producer

    async def run(self, emit: Callable[[bytes], Awaitable[None]]) -> None:
        log.info({"event": "turn.start", "model": self.turn.model_id, "conversation_id": self.conversation_id})
        try:
            open_source = self._open_source()
        except ChatError as err:
            if self._settle_error(err):
                await emit(sse_format("error", err.to_dict()))
            return

        self.state = TurnState.RESOLVING_CONVERSATION
        if self.conversation_id is None:
            self.conversation_id = chat_store.create_conversation(self.user_id).id
        if chat_store.add_user_message(self.conversation_id, self.turn.prompt, self.user_id) is None:
            # Deleted between prepare() and now
            err = ChatError(CONVERSATION_NOT_FOUND, "Conversation not found or access denied", status_code=404)
            if self._settle_error(err):
                await emit(sse_format("error", err.to_dict()))
            return
        placeholder = chat_store.create_model_message(
            self.conversation_id, self.turn.model_id, self.model_name, prompt=self.turn.prompt
        )
        self.message_id = placeholder.id
        await emit(sse_format("message_id", {"message_id": self.message_id, "conversation_id": self.conversation_id}))

        self.state = TurnState.STREAMING
        source = open_source()
        try:
            async for ev in source:
                if self.latch.settled:
                    break
                if isinstance(ev, ChunkEvent):
                    try:
                        chat_store.append_to_model_message(self.message_id, ev.text)
                    except Exception:  # noqa: BLE001
                        log.warning({"event": "turn.chunk_persist_failed", "message_id": self.message_id}, exc_info=True)
                    await emit(sse_format("chunk", {"chunk": ev.text}))
                elif isinstance(ev, DoneEvent):
                    if self._settle_done(ev.text, ev.usage):
                        await emit(
                            sse_format(
                                "done",
                                {
                                    "message_id": self.message_id,
                                    "text": ev.text,
                                    "conversation_id": self.conversation_id,
                                    "status": "done",
                                    "model_name": self.model_name,
                                    "usage": ev.usage,
                                },
                            )
                        )
                    return
                elif isinstance(ev, ErrorEvent):
                    if self._settle_error(ev.error):
                        await emit(sse_format("error", ev.error.to_dict()))
                    return
        finally:
            await source.aclose()

    async def _produce(self, queue: "asyncio.Queue[bytes]", done: asyncio.Event) -> None:
        try:
            await self.run(queue.put)
            if not self.latch.settled:
                # Source ended without a terminal event
                err = ChatError(STREAM_ENDED, "The model stream ended unexpectedly.", status_code=502)
                if self._settle_error(err):
                    await queue.put(sse_format("error", err.to_dict()))
        except Exception as exc:  # noqa: BLE001
            log.exception({"event": "turn.failed", "message_id": self.message_id})
            err = ChatError(INTERNAL_ERROR, "Unexpected server error.", status_code=500, details={"reason": str(exc)})
            if self._settle_error(err):
                await queue.put(sse_format("error", err.to_dict()))
        finally:
            done.set()

    async def _heartbeat(self, queue: "asyncio.Queue[bytes]", done: asyncio.Event) -> None:
        interval = self.settings.sse_heartbeat_sec
        while not done.is_set():
            try:
                await asyncio.wait_for(done.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await queue.put(sse_format(None, {"type": "heartbeat"}))

    async def events(self) -> AsyncIterator[bytes]:
        queue: asyncio.Queue[bytes] = asyncio.Queue()
        done = asyncio.Event()
        prod_task = asyncio.create_task(self._produce(queue, done))
        hb_task = asyncio.create_task(self._heartbeat(queue, done))
        try:
            while True:
                if done.is_set() and queue.empty():
                    break
                try:
                    chunk = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield chunk
        finally:
            # Reached with the latch open only when the consumer went away
            if not self.latch.settled:
                self.cancel()
            prod_task.cancel()
            hb_task.cancel()
