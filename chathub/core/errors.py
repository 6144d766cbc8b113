# chathub/core/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


MISSING_MODEL_ID = "MISSING_MODEL_ID"
INVALID_MODEL_TYPE = "INVALID_MODEL_TYPE"
MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
INVALID_PROMPT = "INVALID_PROMPT"
PROMPT_TOO_LONG = "PROMPT_TOO_LONG"
PROMPT_REJECTED = "PROMPT_REJECTED"
RUNTIME_UNREACHABLE = "RUNTIME_UNREACHABLE"
RUNTIME_HTTP_ERROR = "RUNTIME_HTTP_ERROR"
IDLE_TIMEOUT = "IDLE_TIMEOUT"
TOTAL_TIMEOUT = "TOTAL_TIMEOUT"
PROVIDER_KEY_MISSING = "PROVIDER_KEY_MISSING"
PROVIDER_ERROR = "PROVIDER_ERROR"
UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
CLIENT_DISCONNECTED = "CLIENT_DISCONNECTED"
CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
STREAM_ENDED = "STREAM_ENDED"
INTERNAL_ERROR = "INTERNAL_ERROR"
INVALID_CONVERSATION_ID = "INVALID_CONVERSATION_ID"


class ChatError(Exception):
    """Error normalized for the transport boundary.

    ``message`` is safe to show to the user, ``suggestions`` are remediation
    hints and ``details`` carries structured extras (e.g. the allow-list).
    ``status_code`` is only meaningful before the SSE channel is open.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        suggestions: Optional[List[str]] = None,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestions = list(suggestions or [])
        self.status_code = status_code
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "suggestions": self.suggestions,
            **self.details,
        }

    def __repr__(self) -> str:
        return f"ChatError(code={self.code!r}, message={self.message!r})"


def runtime_unreachable(base_url: str, exc: Exception) -> ChatError:
    return ChatError(
        RUNTIME_UNREACHABLE,
        "The model runtime is not reachable.",
        suggestions=[
            "Check if the runtime is running",
            f"Verify the runtime URL ({base_url})",
            "Try again later",
        ],
        status_code=502,
        details={"reason": str(exc)},
    )


def runtime_http_error(status: int, body: str) -> ChatError:
    suggestions = ["Try again later"]
    if status == 404:
        suggestions.insert(0, "Make sure the model is pulled on the runtime")
    else:
        suggestions.insert(0, "Check the runtime logs")
    return ChatError(
        RUNTIME_HTTP_ERROR,
        f"The model runtime returned HTTP {status}.",
        suggestions=suggestions,
        status_code=502,
        details={"status": status, "body": body[:500]},
    )


def idle_timeout(seconds: float) -> ChatError:
    return ChatError(
        IDLE_TIMEOUT,
        f"No output from the model for {seconds:g} seconds.",
        suggestions=["Try a shorter prompt", "Check if the runtime is overloaded", "Try again later"],
        status_code=504,
        details={"timeout_sec": seconds},
    )


def total_timeout(seconds: float) -> ChatError:
    return ChatError(
        TOTAL_TIMEOUT,
        f"Generation did not finish within {seconds:g} seconds.",
        suggestions=["Try a shorter prompt", "Try a smaller model", "Try again later"],
        status_code=504,
        details={"timeout_sec": seconds},
    )


def runtime_stream_error(detail: str) -> ChatError:
    return ChatError(
        RUNTIME_HTTP_ERROR,
        "The model runtime reported an error while generating.",
        suggestions=["Make sure the model is pulled on the runtime", "Try again later"],
        status_code=502,
        details={"reason": detail[:500]},
    )


def prompt_rejected(reason: str) -> ChatError:
    return ChatError(
        PROMPT_REJECTED,
        reason,
        suggestions=["Shorten the prompt", "Split the question into several messages"],
        status_code=400,
    )
