# chathub/orchestration/redactor.py
from __future__ import annotations

import re


# CSI sequences (colors, cursor hide/show, erase line) and two-byte escapes
_ANSI_RX = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
# C0 controls except tab / newline / carriage return
_CTRL_RX = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_ansi(text: str) -> str:
    if not text:
        return text
    return _ANSI_RX.sub("", text)


def clean_fragment(text: str) -> str:
    """Sanitize one streamed fragment. Whitespace is kept: it is part of the output."""
    if not text:
        return text
    return _CTRL_RX.sub("", strip_ansi(text))
