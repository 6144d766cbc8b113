# apps/api/main.py

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from chathub.core.errors import ChatError
from chathub.core.logging import configure_logging, request_logging_middleware
from chathub.core.settings import get_settings
from chathub.orchestration.chat_turn import ChatTurn, validate_turn_input
from chathub.providers import adapters
from chathub.providers.ollama import get_ollama_client
from chathub.storage import catalog, chat_store, provider_keys

settings = get_settings()
configure_logging(level=settings.log_level)

log = logging.getLogger("chathub.api")


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    added = catalog.seed_defaults()
    if added:
        log.info({"event": "catalog.seeded", "added": added})
    yield


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_logging_middleware)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized. X-User-Id header required.")
    return x_user_id.strip()


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/config")
async def config() -> JSONResponse:
    safe_config = {
        "app_name": settings.app_name,
        "env": settings.app_env,
        "db_dialect": settings.db_dialect,
        "log_level": settings.log_level,
        "runtime": {
            "provider": settings.local_provider,
            "base_url": str(settings.ollama_base_url) if settings.ollama_base_url else None,
        },
        "stream": {
            "idle_timeout_sec": settings.stream_idle_timeout_sec,
            "total_timeout_sec": settings.stream_total_timeout_sec,
            "heartbeat_sec": settings.sse_heartbeat_sec,
            "prompt_max_chars": settings.effective_prompt_max_chars,
        },
        "models": {"cache_ttl_sec": settings.model_cache_ttl_sec},
        "providers": [p["provider"] for p in adapters.supported_providers()],
    }
    return JSONResponse(content=safe_config)


# Local runtime

@app.get("/providers/ollama/health")
async def ollama_health() -> JSONResponse:
    if not settings.ollama_base_url:
        return JSONResponse(status_code=200, content={"status": "error", "detail": "not configured"})
    return JSONResponse(content=await get_ollama_client().ping())


# Hosted providers and keys

class ProviderKeyIn(BaseModel):
    api_key: str


@app.get("/providers")
async def list_providers() -> Dict[str, Any]:
    return {"data": adapters.supported_providers()}


@app.get("/providers/keys")
async def list_provider_keys(user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    return {"data": provider_keys.list_keys(user_id)}


@app.put("/providers/{provider}/key")
async def put_provider_key(provider: str, payload: ProviderKeyIn, user_id: str = Depends(current_user_id)) -> JSONResponse:
    if adapters.get_adapter(provider) is None:
        raise HTTPException(status_code=404, detail=f"Unsupported provider: {provider}")
    api_key = payload.api_key.strip()
    if not api_key:
        raise HTTPException(status_code=400, detail="api_key is required")
    check = await adapters.validate_provider_key(provider, api_key)
    if not check.success:
        return JSONResponse(status_code=400, content={"error": check.to_dict()})
    provider_keys.set_key(user_id, provider, api_key)
    return JSONResponse(content={"provider": provider, "api_key": provider_keys.mask_key(api_key), "models": check.models})


@app.delete("/providers/{provider}/key")
async def delete_provider_key(provider: str, user_id: str = Depends(current_user_id)) -> JSONResponse:
    if not provider_keys.delete_key(user_id, provider):
        raise HTTPException(status_code=404, detail="key not found")
    return JSONResponse(content={"deleted": True})


# Model catalog

class ModelIn(BaseModel):
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    provider: str = "ollama"
    is_active: bool = True


class ModelPatch(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    provider: Optional[str] = None
    is_active: Optional[bool] = None


@app.get("/models")
async def list_models(include_inactive: bool = False) -> Dict[str, Any]:
    rows = catalog.list_models(active_only=not include_inactive)
    return {"data": [catalog.model_to_dict(m) for m in rows]}


@app.post("/models", status_code=201)
async def create_model(payload: ModelIn) -> Dict[str, Any]:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    row = catalog.create_model(
        name,
        display_name=payload.display_name,
        description=payload.description,
        provider=payload.provider,
        is_active=payload.is_active,
    )
    if row is None:
        raise HTTPException(status_code=409, detail="model already exists")
    return catalog.model_to_dict(row)


@app.patch("/models/{name}")
async def update_model(name: str, payload: ModelPatch) -> Dict[str, Any]:
    row = catalog.update_model(name, payload.model_dump(exclude_none=True))
    if row is None:
        raise HTTPException(status_code=404, detail="model not found")
    return catalog.model_to_dict(row)


@app.delete("/models/{name}")
async def delete_model(name: str) -> Dict[str, Any]:
    if not catalog.delete_model(name):
        raise HTTPException(status_code=404, detail="model not found")
    return {"deleted": True}


# Conversations

class ConversationIn(BaseModel):
    title: Optional[str] = None


@app.post("/conversations", status_code=201)
async def create_conversation(payload: ConversationIn, user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    conv = chat_store.create_conversation(user_id, payload.title)
    return chat_store.conversation_to_dict(conv)


@app.get("/conversations")
async def list_conversations(limit: int = 20, user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    rows = chat_store.list_conversations(user_id, limit=max(1, min(limit, 100)))
    return {"data": [chat_store.conversation_to_dict(c) for c in rows]}


@app.get("/conversations/{conversation_id}/messages")
async def get_conversation_messages(
    conversation_id: str, limit: int = 50, user_id: str = Depends(current_user_id)
) -> Dict[str, Any]:
    items = chat_store.get_messages(conversation_id, user_id, limit=max(1, min(limit, 500)))
    if items is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation_id": conversation_id, "messages": items}


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    if not chat_store.delete_conversation(conversation_id, user_id):
        raise HTTPException(status_code=404, detail="Conversation not found or access denied")
    return {"deleted": True, "conversation_id": conversation_id}


# Streaming chat turn

class ChatStreamRequest(BaseModel):
    # Loosely typed so shape errors come back with our own codes
    modelId: Any = None
    prompt: Any = None
    conversationId: Any = None


@app.post("/chat/stream")
async def chat_stream(req: ChatStreamRequest, user_id: str = Depends(current_user_id)) -> StreamingResponse:
    turn_input = validate_turn_input(req.modelId, req.prompt, req.conversationId, settings)
    turn = ChatTurn(user_id, turn_input, settings=settings)
    turn.prepare()
    return StreamingResponse(turn.events(), headers=SSE_HEADERS)
