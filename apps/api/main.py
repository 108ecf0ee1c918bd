# apps/api/main.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from apps.api.deps import (
    get_access_policy,
    get_caller,
    get_credential_store,
    get_project_store,
    require_caller,
)
from chatprojects.core.auth import Caller
from chatprojects.core.collaborators import AccessPolicy, CredentialStore, ProjectStore
from chatprojects.core.logging import configure_logging, request_logging_middleware
from chatprojects.core.settings import get_settings
from chatprojects.orchestration.enhancer import enhance_prompt
from chatprojects.orchestration.relay import sse_response
from chatprojects.orchestration.session import StreamingSession
from chatprojects.orchestration.titles import placeholder_title
from chatprojects.providers.base import UpstreamError
from chatprojects.providers.registry import (
    UnknownProviderError,
    available_providers,
    is_known_provider,
    validate_credential,
)
from chatprojects.storage import repo
from chatprojects.storage.models import Chat, Message

settings = get_settings()
configure_logging(level=settings.log_level)

app = FastAPI(title=settings.app_name, version="0.1.0")
log = logging.getLogger("app.api")

# Explicit origins; wildcard is not allowed together with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_logging_middleware)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def chat_to_dict(chat: Chat) -> Dict[str, Any]:
    return {
        "id": chat.id,
        "mode": chat.mode,
        "provider": chat.provider,
        "model": chat.model,
        "project_id": chat.project_id,
        "title": chat.title,
        "instructions": chat.instructions,
        "message_count": chat.message_count,
        "created_at": _iso(chat.created_at),
        "updated_at": _iso(chat.updated_at),
    }


def message_to_dict(msg: Message) -> Dict[str, Any]:
    return {
        "id": msg.id,
        "chat_id": msg.chat_id,
        "role": msg.role,
        "content": msg.content,
        "metadata": msg.meta,
        "created_at": _iso(msg.created_at),
    }


def _owned_chat_or_404(chat_id: int, caller: Caller) -> Chat:
    chat = repo.get_user_chat(chat_id, caller.user_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat


class ChatCreateIn(BaseModel):
    mode: Literal["project", "general"] = "general"
    project_id: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    title: Optional[str] = None
    instructions: Optional[str] = None


class ChatUpdateIn(BaseModel):
    title: str


class ValidateKeyIn(BaseModel):
    api_key: str


class EnhanceIn(BaseModel):
    prompt: str
    provider: str = "openai"
    model: str = "gpt-4o"
    context: str = ""


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/config")
async def config(credentials: CredentialStore = Depends(get_credential_store)) -> JSONResponse:
    safe_config = {
        "app_name": settings.app_name,
        "env": settings.app_env,
        "db_dialect": settings.db_dialect,
        "log_level": settings.log_level,
        "providers": {p["id"]: {"configured": p["has_credential"]} for p in available_providers(credentials, settings)},
        "defaults": {
            "project_model": settings.default_project_model,
            "general_provider": settings.default_general_provider,
            "general_model": settings.default_general_model,
            "history_limit": settings.history_limit,
        },
        "title": {"provider": settings.title_provider, "model": settings.title_model},
        "max_image_mb": settings.max_image_mb,
    }
    return JSONResponse(content=safe_config)


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------- Streaming ----------------

@app.post("/chat/stream")
async def chat_stream(
    request: Request,
    caller: Optional[Caller] = Depends(get_caller),
    credentials: CredentialStore = Depends(get_credential_store),
    projects: ProjectStore = Depends(get_project_store),
    access: AccessPolicy = Depends(get_access_policy),
) -> StreamingResponse:
    # Input problems, malformed bodies included, are reported inside the stream
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    session = StreamingSession(payload, caller, credentials=credentials, projects=projects, access=access, settings=settings)
    return sse_response(session.events(), padding=settings.sse_padding_bytes)


# ---------------- Chats ----------------

@app.get("/chats")
async def list_chats(
    mode: Optional[Literal["project", "general"]] = None,
    project_id: Optional[int] = None,
    caller: Caller = Depends(require_caller),
) -> JSONResponse:
    chats = repo.list_chats(caller.user_id, mode=mode, project_id=project_id)
    return JSONResponse(content={"data": [chat_to_dict(c) for c in chats]})


@app.post("/chats", status_code=201)
async def create_chat(
    payload: ChatCreateIn,
    caller: Caller = Depends(require_caller),
    projects: ProjectStore = Depends(get_project_store),
    access: AccessPolicy = Depends(get_access_policy),
) -> JSONResponse:
    if payload.mode == "project":
        if payload.project_id is None:
            raise HTTPException(status_code=400, detail="Project ID is required.")
        if not access.can_access_project(caller.user_id, payload.project_id):
            raise HTTPException(status_code=403, detail="Access denied.")
        project = projects.get_project(payload.project_id)
        provider = "openai"
        model = (project.model if project else None) or settings.default_project_model
    else:
        provider = payload.provider or settings.default_general_provider
        if not is_known_provider(provider):
            raise HTTPException(status_code=400, detail="Provider not available.")
        model = payload.model or settings.default_general_model
    chat = repo.create_chat(
        user_id=caller.user_id,
        mode=payload.mode,
        provider=provider,
        model=model,
        project_id=payload.project_id if payload.mode == "project" else None,
        title=payload.title or placeholder_title(payload.mode),
        instructions=payload.instructions,
    )
    return JSONResponse(status_code=201, content=chat_to_dict(chat))


@app.get("/chats/{chat_id}")
async def get_chat(chat_id: int, caller: Caller = Depends(require_caller)) -> JSONResponse:
    return JSONResponse(content=chat_to_dict(_owned_chat_or_404(chat_id, caller)))


@app.patch("/chats/{chat_id}")
async def rename_chat(chat_id: int, payload: ChatUpdateIn, caller: Caller = Depends(require_caller)) -> JSONResponse:
    _owned_chat_or_404(chat_id, caller)
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required.")
    repo.update_chat_title(chat_id, title[:256])
    return JSONResponse(content=chat_to_dict(repo.get_chat(chat_id)))


@app.delete("/chats/{chat_id}")
async def delete_chat(chat_id: int, caller: Caller = Depends(require_caller)) -> JSONResponse:
    _owned_chat_or_404(chat_id, caller)
    repo.delete_chat(chat_id)
    return JSONResponse(content={"deleted": True, "chat_id": chat_id})


@app.get("/chats/{chat_id}/messages")
async def chat_messages(
    chat_id: int,
    limit: int = Query(default=0, ge=0, le=1000),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(require_caller),
) -> JSONResponse:
    chat = _owned_chat_or_404(chat_id, caller)
    items: List[Message] = repo.get_messages(chat_id, limit=limit, offset=offset)
    return JSONResponse(content={"chat": chat_to_dict(chat), "data": [message_to_dict(m) for m in items]})


@app.get("/chats/{chat_id}/messages/search")
async def search_chat_messages(
    chat_id: int,
    q: str = Query(min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    caller: Caller = Depends(require_caller),
) -> JSONResponse:
    _owned_chat_or_404(chat_id, caller)
    return JSONResponse(content={"data": [message_to_dict(m) for m in repo.search_messages(chat_id, q, limit)]})


# ---------------- Providers / prompts ----------------

@app.get("/providers")
async def providers(
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
) -> JSONResponse:
    return JSONResponse(content={"data": available_providers(credentials, settings)})


@app.post("/providers/{provider_id}/validate")
async def validate_provider_key(
    provider_id: str, payload: ValidateKeyIn, caller: Caller = Depends(require_caller)
) -> JSONResponse:
    try:
        valid = await validate_credential(provider_id, payload.api_key, settings)
    except UnknownProviderError:
        raise HTTPException(status_code=404, detail="Provider not available.") from None
    return JSONResponse(content={"provider": provider_id, "valid": valid})


@app.post("/prompts/enhance")
async def enhance(
    payload: EnhanceIn,
    caller: Caller = Depends(require_caller),
    credentials: CredentialStore = Depends(get_credential_store),
) -> JSONResponse:
    if not payload.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is required.")
    try:
        text = await enhance_prompt(
            payload.prompt,
            credentials=credentials,
            provider=payload.provider,
            model=payload.model,
            context=payload.context,
            settings=settings,
        )
    except UnknownProviderError:
        raise HTTPException(status_code=400, detail="Provider not available.") from None
    except UpstreamError as exc:
        log.warning({"event": "enhance_failed", "provider": payload.provider, "error": exc.message})
        raise HTTPException(status_code=502, detail=exc.message) from None
    return JSONResponse(content={"prompt": text})
