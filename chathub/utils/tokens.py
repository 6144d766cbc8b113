# chathub/utils/tokens.py
from __future__ import annotations

import math
from typing import Any, Dict, Optional


def approx_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~= 4 chars."""
    return int(math.ceil(len(text or "") / 4))


def normalize_usage(raw: Optional[Dict[str, Any]], prompt: str = "", completion: str = "") -> Dict[str, int]:
    """Map the usage shapes of the various backends onto prompt/completion/total.

    Understands OpenAI (prompt_tokens/completion_tokens), Anthropic
    (input_tokens/output_tokens), Gemini (promptTokenCount/candidatesTokenCount)
    and Ollama (prompt_eval_count/eval_count). Falls back to an estimate.
    """
    if not raw:
        inp = approx_tokens(prompt)
        out = approx_tokens(completion)
        return {"prompt_tokens": inp, "completion_tokens": out, "total_tokens": inp + out}
    if "prompt_eval_count" in raw or "eval_count" in raw:
        inp = int(raw.get("prompt_eval_count") or 0)
        out = int(raw.get("eval_count") or 0)
        tot = inp + out
    elif "input_tokens" in raw or "output_tokens" in raw:
        inp = int(raw.get("input_tokens", 0) or 0)
        out = int(raw.get("output_tokens", 0) or 0)
        tot = int(raw.get("total_tokens", inp + out) or (inp + out))
    elif "promptTokenCount" in raw or "candidatesTokenCount" in raw:
        inp = int(raw.get("promptTokenCount", 0) or 0)
        out = int(raw.get("candidatesTokenCount", 0) or 0)
        tot = int(raw.get("totalTokenCount", inp + out) or (inp + out))
    else:
        inp = int(raw.get("prompt_tokens", 0) or 0)
        out = int(raw.get("completion_tokens", raw.get("generated_tokens", 0)) or 0)
        tot = int(raw.get("total_tokens", inp + out) or (inp + out))
    return {"prompt_tokens": inp, "completion_tokens": out, "total_tokens": tot}
