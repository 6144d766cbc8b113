# chathub/providers/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

from chathub.core.errors import ChatError


@dataclass(frozen=True)
class ChunkEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    text: str
    usage: Optional[Dict[str, int]] = None


@dataclass(frozen=True)
class ErrorEvent:
    error: ChatError


GenerationEvent = Union[ChunkEvent, DoneEvent, ErrorEvent]


class GenerationSource(Protocol):
    def __call__(self) -> AsyncIterator[GenerationEvent]:
        """Open a generation and yield chunks, then exactly one Done or Error."""
        ...


@dataclass
class AdapterResult:
    success: bool
    provider: str
    model: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    status_code: Optional[int] = None
    models: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "provider": self.provider}
        if self.model is not None:
            out["model"] = self.model
        if self.success:
            out["data"] = self.data
            out["usage"] = self.usage
        else:
            out["error"] = self.error
            out["status_code"] = self.status_code
        return out


class ProviderAdapter(Protocol):
    provider: str
    name: str

    async def chat(
        self,
        model: str,
        api_key: str,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> AdapterResult:
        """Single (non-streaming) chat completion.

        ``data`` holds the provider's raw JSON, ``usage`` is normalized to
        ``{"prompt_tokens", "completion_tokens", "total_tokens"}``.
        """
        ...

    async def get_models(self, api_key: str) -> AdapterResult:
        ...

    async def validate_key(self, api_key: str) -> AdapterResult:
        ...

    def format_messages(self, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        ...

    def extract_text(self, data: Any) -> str:
        ...
