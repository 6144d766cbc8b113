# chathub/core/logging.py
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request, Response

# Set per request; tasks spawned while serving it (stream producer, heartbeat) inherit it
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


class TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_var.get()
        return True


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    msg = record.msg
    fields: Dict[str, Any] = dict(msg) if isinstance(msg, dict) else {"message": record.getMessage()}
    trace_id = getattr(record, "trace_id", None)
    if trace_id and "trace_id" not in fields:
        fields["trace_id"] = trace_id
    return fields


def _kv(value: Any) -> str:
    if isinstance(value, (dict, list)):
        text = json.dumps(value, ensure_ascii=False, default=str)
    else:
        text = str(value)
    return f'"{text}"' if (" " in text or ";" in text) else text


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            **_record_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    """``<time> | LEVEL | logger: key=value ...`` for terminals."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        fields = _record_fields(record)
        if isinstance(record.msg, dict) or len(fields) > 1:
            text = " ".join(f"{k}={_kv(v)}" for k, v in fields.items())
        else:
            text = fields["message"]
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return f"{ts} | {record.levelname:<5} | {record.name}: {text}".rstrip()


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).lower()
    handler = logging.StreamHandler()
    handler.setFormatter(PlainFormatter() if fmt in ("plain", "text", "human") else JsonFormatter())
    handler.addFilter(TraceIdFilter())

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)
    # httpx logs every request at INFO; one line per token stream is enough
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def request_logging_middleware(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex[:16]
    token = trace_id_var.set(trace_id)
    start = time.perf_counter()
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response
    finally:
        logging.getLogger("chathub.request").info(
            {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code if response is not None else 500,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "user_id": request.headers.get("x-user-id"),
            }
        )
        trace_id_var.reset(token)
