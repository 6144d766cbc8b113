# chathub/providers/model_registry.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional, Sequence, Tuple

from chathub.core.errors import INVALID_MODEL_TYPE, MISSING_MODEL_ID, MODEL_NOT_FOUND, ChatError
from chathub.core.settings import get_settings

log = logging.getLogger("chathub.registry")


def _fetch_from_catalog() -> List[str]:
    from chathub.storage import catalog

    return catalog.find_active_names(get_settings().local_provider)


def near_match(requested: str, allowed: Sequence[str]) -> Optional[str]:
    q = requested.lower()
    for name in allowed:
        n = name.lower()
        if q in n or n in q:
            return name
    return None


class ModelRegistry:
    """Time-bound allow-list of local model names.

    The snapshot is swapped as a whole, so a refresh racing a read only
    decides which list that read sees.
    """

    def __init__(
        self,
        fetch: Callable[[], List[str]] = _fetch_from_catalog,
        *,
        ttl_sec: Optional[float] = None,
        fallback: Optional[Sequence[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl_sec = ttl_sec
        self._fallback = list(fallback) if fallback is not None else None
        self._clock = clock
        self._snapshot: Tuple[Tuple[str, ...], Optional[float]] = ((), None)

    @property
    def ttl_sec(self) -> float:
        return self._ttl_sec if self._ttl_sec is not None else get_settings().model_cache_ttl_sec

    @property
    def fallback(self) -> List[str]:
        return self._fallback if self._fallback is not None else list(get_settings().model_fallback_list)

    def invalidate(self) -> None:
        names, _ = self._snapshot
        self._snapshot = (names, None)
        log.info({"event": "registry.invalidated"})

    def reset(self) -> None:
        self._snapshot = ((), None)

    def allowed_models(self) -> List[str]:
        names, updated_at = self._snapshot
        now = self._clock()
        if updated_at is not None and now - updated_at < self.ttl_sec:
            return list(names)
        try:
            fresh = tuple(self._fetch())
        except Exception as exc:  # noqa: BLE001
            if names:
                log.warning({"event": "registry.refresh_failed", "fallback": "previous", "error": str(exc)})
                return list(names)
            log.warning({"event": "registry.refresh_failed", "fallback": "builtin", "error": str(exc)})
            return self.fallback
        self._snapshot = (fresh, now)
        return list(fresh)

    def resolve(self, raw: Any) -> str:
        if raw is None:
            raise ChatError(MISSING_MODEL_ID, "A model id is required.", suggestions=["Pick a model from the list"])
        if not isinstance(raw, str):
            raise ChatError(
                INVALID_MODEL_TYPE,
                "The model id must be a string.",
                suggestions=["Send the model name as text, e.g. \"gemma:2b\""],
            )
        model_id = raw.strip()
        if not model_id:
            raise ChatError(MISSING_MODEL_ID, "A model id is required.", suggestions=["Pick a model from the list"])
        allowed = self.allowed_models()
        if model_id in allowed:
            return model_id
        hint = near_match(model_id, allowed)
        suggestions = [f"Did you mean \"{hint}\"?"] if hint else []
        suggestions.append("Choose one of the available models")
        raise ChatError(
            MODEL_NOT_FOUND,
            f"Model \"{model_id}\" is not available.",
            suggestions=suggestions,
            status_code=404,
            details={"suggestion": hint, "available_models": allowed},
        )

    def is_local(self, model_id: str) -> bool:
        """True for ids served by the local runtime, active or not."""
        if model_id in self.allowed_models():
            return True
        from chathub.storage import catalog

        try:
            row = catalog.get_model(model_id)
        except Exception:  # noqa: BLE001
            log.warning({"event": "registry.lookup_failed", "model": model_id}, exc_info=True)
            return False
        return row is not None and row.provider == get_settings().local_provider

    def display_name(self, model_id: str) -> str:
        from chathub.storage import catalog

        try:
            row = catalog.get_model(model_id)
        except Exception:  # noqa: BLE001
            log.warning({"event": "registry.display_name_failed", "model": model_id}, exc_info=True)
            return model_id
        return (row.display_name if row and row.display_name else model_id)


model_registry = ModelRegistry()
