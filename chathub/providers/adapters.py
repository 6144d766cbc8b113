# chathub/providers/adapters.py
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx

from chathub.core.errors import PROVIDER_ERROR, UNSUPPORTED_PROVIDER, ChatError
from chathub.core.settings import get_settings
from chathub.providers.base import AdapterResult, ChunkEvent, DoneEvent, ErrorEvent, GenerationEvent, ProviderAdapter
from chathub.utils.tokens import normalize_usage

log = logging.getLogger("chathub.providers")

USER_AGENT = "chathub/0.1"


def _error_message(resp: httpx.Response, fallback: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300] or fallback
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return str(err.get("message") or fallback)
    if isinstance(err, str):
        return err
    return fallback


class _HttpAdapter:
    provider = ""
    name = ""

    def _timeout(self) -> float:
        return get_settings().provider_timeout_sec

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Tuple[Optional[httpx.Response], Optional[AdapterResult]]:
        try:
            async with httpx.AsyncClient(timeout=timeout or self._timeout()) as client:
                resp = await client.request(method, url, headers={"User-Agent": USER_AGENT, **headers}, **kwargs)
        except httpx.RequestError as exc:
            log.warning({"event": "provider.unreachable", "provider": self.provider, "error": str(exc)})
            return None, AdapterResult(
                success=False,
                provider=self.provider,
                model=model,
                error=f"Failed to connect to {self.name}: {exc}",
            )
        if not resp.is_success:
            msg = _error_message(resp, f"{self.name} API request failed")
            log.warning({"event": "provider.http_error", "provider": self.provider, "status": resp.status_code})
            return None, AdapterResult(
                success=False,
                provider=self.provider,
                model=model,
                error=msg,
                status_code=resp.status_code,
            )
        return resp, None

    async def validate_key(self, api_key: str) -> AdapterResult:
        return await self.get_models(api_key)  # type: ignore[attr-defined]


class OpenAICompatibleAdapter(_HttpAdapter):
    """OpenAI's chat completions shape; several vendors expose the same API."""

    def __init__(self, provider: str, name: str, base_url: str) -> None:
        self.provider = provider
        self.name = name
        self.base_url = base_url.rstrip("/")

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def format_messages(self, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        out = []
        for m in messages:
            item: Dict[str, Any] = {"role": m["role"], "content": m["content"]}
            if m.get("name"):
                item["name"] = m["name"]
            out.append(item)
        return out

    def extract_text(self, data: Any) -> str:
        choices = (data or {}).get("choices") or [{}]
        return ((choices[0] or {}).get("message") or {}).get("content") or ""

    async def chat(
        self,
        model: str,
        api_key: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> AdapterResult:
        opts = options or {}
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self.format_messages(messages),
            "temperature": opts.get("temperature", 0.7),
            "stream": False,
        }
        for key in ("max_tokens", "top_p", "stop", "user"):
            if opts.get(key) is not None:
                payload[key] = opts[key]
        resp, failure = await self._request(
            "POST", f"{self.base_url}/chat/completions", headers=self._headers(api_key), model=model, json=payload
        )
        if failure:
            return failure
        data = resp.json()
        return AdapterResult(
            success=True,
            provider=self.provider,
            model=model,
            data=data,
            usage=normalize_usage(data.get("usage")) if data.get("usage") else None,
        )

    async def get_models(self, api_key: str) -> AdapterResult:
        resp, failure = await self._request(
            "GET", f"{self.base_url}/models", headers=self._headers(api_key), timeout=10.0
        )
        if failure:
            return failure
        items = (resp.json() or {}).get("data") or []
        return AdapterResult(success=True, provider=self.provider, models=[{"id": m.get("id")} for m in items])


class AnthropicAdapter(_HttpAdapter):
    provider = "anthropic"
    name = "Anthropic"
    base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"x-api-key": api_key, "anthropic-version": self.api_version, "Content-Type": "application/json"}

    def format_messages(self, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        # System prompts travel in a separate field
        return [
            {"role": "assistant" if m["role"] == "assistant" else "user", "content": m["content"]}
            for m in messages
            if m["role"] != "system"
        ]

    def extract_text(self, data: Any) -> str:
        blocks = (data or {}).get("content") or []
        return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")

    async def chat(
        self,
        model: str,
        api_key: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> AdapterResult:
        opts = options or {}
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self.format_messages(messages),
            "max_tokens": opts.get("max_tokens") or 1024,
            "temperature": opts.get("temperature", 0.7),
        }
        system = opts.get("system") or "\n".join(m["content"] for m in messages if m["role"] == "system")
        if system:
            payload["system"] = system
        resp, failure = await self._request(
            "POST", f"{self.base_url}/messages", headers=self._headers(api_key), model=model, json=payload
        )
        if failure:
            return failure
        data = resp.json()
        return AdapterResult(
            success=True,
            provider=self.provider,
            model=model,
            data=data,
            usage=normalize_usage(data.get("usage")) if data.get("usage") else None,
        )

    async def get_models(self, api_key: str) -> AdapterResult:
        resp, failure = await self._request(
            "GET", f"{self.base_url}/models", headers=self._headers(api_key), timeout=10.0
        )
        if failure:
            return failure
        items = (resp.json() or {}).get("data") or []
        return AdapterResult(
            success=True,
            provider=self.provider,
            models=[{"id": m.get("id"), "name": m.get("display_name")} for m in items],
        )


class GeminiAdapter(_HttpAdapter):
    provider = "gemini"
    name = "Google Gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def format_messages(self, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        return [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in messages
            if m["role"] != "system"
        ]

    def extract_text(self, data: Any) -> str:
        candidates = (data or {}).get("candidates") or [{}]
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)

    async def chat(
        self,
        model: str,
        api_key: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> AdapterResult:
        opts = options or {}
        payload: Dict[str, Any] = {
            "contents": self.format_messages(messages),
            "generationConfig": {"temperature": opts.get("temperature", 0.7)},
        }
        if opts.get("max_tokens"):
            payload["generationConfig"]["maxOutputTokens"] = opts["max_tokens"]
        system = "\n".join(m["content"] for m in messages if m["role"] == "system")
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        resp, failure = await self._request(
            "POST",
            f"{self.base_url}/models/{model}:generateContent",
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            model=model,
            json=payload,
        )
        if failure:
            return failure
        data = resp.json()
        return AdapterResult(
            success=True,
            provider=self.provider,
            model=model,
            data=data,
            usage=normalize_usage(data.get("usageMetadata")) if data.get("usageMetadata") else None,
        )

    async def get_models(self, api_key: str) -> AdapterResult:
        resp, failure = await self._request(
            "GET", f"{self.base_url}/models", headers={"x-goog-api-key": api_key}, timeout=10.0
        )
        if failure:
            return failure
        items = (resp.json() or {}).get("models") or []
        return AdapterResult(
            success=True,
            provider=self.provider,
            models=[
                {"id": (m.get("name") or "").split("/", 1)[-1], "name": m.get("displayName")}
                for m in items
                if "generateContent" in (m.get("supportedGenerationMethods") or [])
            ],
        )


ADAPTERS: Dict[str, ProviderAdapter] = {
    "openai": OpenAICompatibleAdapter("openai", "OpenAI", "https://api.openai.com/v1"),
    "anthropic": AnthropicAdapter(),
    "gemini": GeminiAdapter(),
    "groq": OpenAICompatibleAdapter("groq", "Groq", "https://api.groq.com/openai/v1"),
    "deepseek": OpenAICompatibleAdapter("deepseek", "DeepSeek", "https://api.deepseek.com/v1"),
    "together": OpenAICompatibleAdapter("together", "Together AI", "https://api.together.xyz/v1"),
    "mistral": OpenAICompatibleAdapter("mistral", "Mistral AI", "https://api.mistral.ai/v1"),
    "perplexity": OpenAICompatibleAdapter("perplexity", "Perplexity", "https://api.perplexity.ai"),
}


def get_adapter(provider: str) -> Optional[ProviderAdapter]:
    return ADAPTERS.get(provider)


def split_model_id(
    model_id: str, is_local: Optional[Callable[[str], bool]] = None
) -> Tuple[Optional[str], str]:
    """``openai:gpt-4o`` -> ("openai", "gpt-4o"); ``gemma:2b`` -> (None, "gemma:2b").

    Ollama tags can share a prefix with a hosted provider (``mistral:7b``), so
    ids the local catalog knows are checked with ``is_local`` first.
    """
    if is_local is not None and is_local(model_id):
        return None, model_id
    if ":" in model_id:
        prefix, rest = model_id.split(":", 1)
        if prefix in ADAPTERS and rest:
            return prefix, rest
    return None, model_id


def _unsupported(provider: str) -> AdapterResult:
    return AdapterResult(success=False, provider=provider, error=f"Unsupported provider: {provider}")


async def send_chat_completion(
    provider: str,
    model: str,
    api_key: str,
    messages: List[Dict[str, str]],
    options: Optional[Dict[str, Any]] = None,
) -> AdapterResult:
    adapter = get_adapter(provider)
    if adapter is None:
        return _unsupported(provider)
    return await adapter.chat(model, api_key, messages, options or {})


async def get_provider_models(provider: str, api_key: str) -> AdapterResult:
    adapter = get_adapter(provider)
    if adapter is None:
        return _unsupported(provider)
    return await adapter.get_models(api_key)


async def validate_provider_key(provider: str, api_key: str) -> AdapterResult:
    adapter = get_adapter(provider)
    if adapter is None:
        return _unsupported(provider)
    return await adapter.validate_key(api_key)


def supported_providers() -> List[Dict[str, str]]:
    return [{"provider": a.provider, "name": a.name} for a in ADAPTERS.values()]


async def hosted_generation(
    provider: str,
    model: str,
    api_key: str,
    messages: List[Dict[str, str]],
    options: Optional[Dict[str, Any]] = None,
) -> AsyncIterator[GenerationEvent]:
    """Present a hosted completion as the same event stream the local runtime produces."""
    adapter = get_adapter(provider)
    if adapter is None:
        result = _unsupported(provider)
    else:
        result = await adapter.chat(model, api_key, messages, options or {})
    if not result.success:
        yield ErrorEvent(
            ChatError(
                PROVIDER_ERROR if adapter is not None else UNSUPPORTED_PROVIDER,
                result.error or "Provider request failed",
                suggestions=["Check the API key for this provider", "Try again later"],
                status_code=502,
                details={"provider": provider, "status": result.status_code},
            )
        )
        return
    text = adapter.extract_text(result.data)
    if text:
        yield ChunkEvent(text)
    prompt_text = "".join(m["content"] for m in messages)
    yield DoneEvent(text, result.usage or normalize_usage(None, prompt_text, text))
