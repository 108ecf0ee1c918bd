# chatprojects/orchestration/session.py
from __future__ import annotations

import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from chatprojects.core.auth import Caller
from chatprojects.core.collaborators import AccessPolicy, CredentialStore, ProjectStore
from chatprojects.core.metrics import CP_STREAMS_FINISHED, CP_STREAMS_STARTED, CP_TITLES, CP_UPSTREAM_ERRORS
from chatprojects.core.settings import AppSettings, get_settings
from chatprojects.orchestration.context_builder import build_history
from chatprojects.orchestration.titles import generate_title, is_placeholder_title, placeholder_title
from chatprojects.providers.base import BaseProvider
from chatprojects.providers.events import (
    ChatIdEvent,
    CompletionOptions,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    Source,
    SourcesEvent,
    StreamEvent,
    TitleUpdateEvent,
)
from chatprojects.providers.registry import UnknownProviderError, create_provider
from chatprojects.storage import repo
from chatprojects.storage.models import Chat
from chatprojects.utils.images import ImageValidationError, validate_images

log = logging.getLogger("app.stream")

INVALID_REQUEST = "Invalid request."
NO_VECTOR_STORE = "No vector store configured for this project. Please upload files first."
PROJECT_PROVIDER = "openai"

TitleGenerator = Callable[..., Awaitable[str]]


class SessionState(str, Enum):
    VALIDATING = "validating"
    CHAT_RESOLVING = "chat_resolving"
    STREAMING = "streaming"
    PERSISTING = "persisting"
    TITLE_CHECK = "title_check"
    DONE = "done"
    ERROR_EXIT = "error_exit"


class SessionError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ChatStreamRequest(BaseModel):
    message: str = ""
    chat_id: Optional[int] = None
    project_id: Optional[int] = None
    mode: Optional[Literal["project", "general"]] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    images: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("chat_id", "project_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if v in ("", 0, "0"):
            return None
        return v

    @property
    def is_project(self) -> bool:
        return self.mode == "project" or (self.mode is None and self.project_id is not None)


@dataclass
class ResolvedTurn:
    chat: Chat
    provider: BaseProvider
    model: str
    options: CompletionOptions
    count_before: int = 0


@dataclass
class TurnState:
    content: List[str] = field(default_factory=list)
    sources: List[Source] = field(default_factory=list)
    pending_persist: bool = False
    assistant_saved: bool = False

    @property
    def text(self) -> str:
        return "".join(self.content)


class StreamingSession:
    """One browser request: validate, resolve the chat, relay the upstream stream, persist.

    ``events()`` yields StreamEvents for the relay and always ends with exactly one
    ``done``. Client disconnect surfaces as cancellation or generator close; partial
    content gathered so far is still persisted.
    """

    def __init__(
        self,
        request: Union[ChatStreamRequest, Dict[str, Any], None],
        caller: Optional[Caller],
        *,
        credentials: CredentialStore,
        projects: ProjectStore,
        access: AccessPolicy,
        settings: Optional[AppSettings] = None,
        title_generator: TitleGenerator = generate_title,
    ) -> None:
        # Raw bodies are parsed while validating so type errors stay inside the stream
        self._payload = request
        self.request: Optional[ChatStreamRequest] = request if isinstance(request, ChatStreamRequest) else None
        self.caller = caller
        self.credentials = credentials
        self.projects = projects
        self.access = access
        self.settings = settings or get_settings()
        self.title_generator = title_generator
        self.state = SessionState.VALIDATING
        self.turn = TurnState()
        self._user_content = ""
        self._images: List[Dict[str, str]] = []
        self._chat_id: Optional[int] = None
        self._started = time.perf_counter()

    def _transition(self, state: SessionState) -> None:
        log.debug({"event": "state", "chat_id": self._chat_id, "from": self.state.value, "to": state.value})
        self.state = state

    async def events(self) -> AsyncIterator[StreamEvent]:
        try:
            try:
                self._validate()
                CP_STREAMS_STARTED.labels(mode="project" if self.request.is_project else "general").inc()
                self._transition(SessionState.CHAT_RESOLVING)
                turn = self._resolve()
                self._chat_id = turn.chat.id
                yield ChatIdEvent(id=turn.chat.id)

                self._transition(SessionState.STREAMING)
                self._save_user_message(turn.chat)
                self.turn.pending_persist = True
                history = build_history(turn.chat.id, self.settings.history_limit, self._images)
                upstream = turn.provider.stream_completion(history, turn.model, turn.options)
                async with aclosing(upstream):
                    async for event in upstream:
                        if isinstance(event, DoneEvent):
                            break
                        if isinstance(event, ContentEvent):
                            self.turn.content.append(event.text)
                        elif isinstance(event, SourcesEvent):
                            self.turn.sources = list(event.sources)
                        elif isinstance(event, ErrorEvent):
                            CP_UPSTREAM_ERRORS.labels(provider=turn.provider.identifier).inc()
                        yield event

                self._transition(SessionState.PERSISTING)
                self._persist_assistant()

                self._transition(SessionState.TITLE_CHECK)
                title_event = await self._title_check(turn)
                if title_event is not None:
                    yield title_event
                self._transition(SessionState.DONE)
            except SessionError as exc:
                self._transition(SessionState.ERROR_EXIT)
                log.info({"event": "session_rejected", "chat_id": self._chat_id, "error": exc.message})
                yield ErrorEvent(message=exc.message)
            except Exception:
                self._transition(SessionState.ERROR_EXIT)
                log.exception({"event": "session_failed", "chat_id": self._chat_id})
                yield ErrorEvent(message="Server error.")
        finally:
            if self.turn.pending_persist:
                # Disconnect or failure before the Persisting stage ran
                self._persist_assistant()
            outcome = self.state.value if self.state in (SessionState.DONE, SessionState.ERROR_EXIT) else "cancelled"
            CP_STREAMS_FINISHED.labels(outcome=outcome).inc()
            log.info(
                {
                    "event": "session_end",
                    "chat_id": self._chat_id,
                    "outcome": outcome,
                    "chars": len(self.turn.text),
                    "assistant_saved": self.turn.assistant_saved,
                    "duration_ms": round((time.perf_counter() - self._started) * 1000, 2),
                }
            )
        yield DoneEvent()

    # ---------------- Validating ----------------

    def _parse_request(self) -> ChatStreamRequest:
        if self.request is not None:
            return self.request
        if not isinstance(self._payload, dict):
            raise SessionError(INVALID_REQUEST)
        try:
            return ChatStreamRequest.model_validate(self._payload)
        except ValidationError as exc:
            log.info({"event": "request_invalid", "errors": [e["loc"] for e in exc.errors()]})
            raise SessionError(INVALID_REQUEST) from None

    def _validate(self) -> None:
        if self.caller is None:
            raise SessionError("You must be logged in.")
        self.request = req = self._parse_request()
        if not self.access.can_use_chat(self.caller.user_id):
            raise SessionError("Access denied.")
        if req.mode == "project" and req.project_id is None:
            raise SessionError("Project ID is required.")
        try:
            self._images = validate_images(req.images, max_mb=self.settings.max_image_mb)
        except ImageValidationError as exc:
            raise SessionError(str(exc)) from None

        content = (req.message or "").strip()
        if not content:
            if not self._images:
                raise SessionError("Message or image is required." if not req.is_project else "Message is required.")
            content = self.settings.default_image_prompt
        self._user_content = content

        if not req.is_project and req.chat_id is None:
            if not req.provider:
                raise SessionError("Provider is required.")
            if not req.model:
                raise SessionError("Model is required.")

    # ---------------- ChatResolving ----------------

    def _resolve(self) -> ResolvedTurn:
        if self.request.is_project:
            return self._resolve_project()
        return self._resolve_general()

    def _load_owned_chat(self, mode: str, project_id: Optional[int] = None) -> Optional[Chat]:
        chat_id = self.request.chat_id
        if chat_id is None:
            return None
        chat = repo.get_user_chat(chat_id, self.caller.user_id)
        if chat is None or chat.mode != mode or (mode == "project" and chat.project_id != project_id):
            raise SessionError("Invalid chat ID or access denied.")
        return chat

    def _provider(self, identifier: str) -> BaseProvider:
        try:
            provider = create_provider(identifier, self.credentials, self.settings)
        except UnknownProviderError:
            raise SessionError("Provider not available.") from None
        if not provider.has_credential():
            raise SessionError("API key not configured for this provider.")
        return provider

    def _create_chat(self, **fields: Any) -> Chat:
        try:
            chat = repo.create_chat(user_id=self.caller.user_id, title=placeholder_title(fields["mode"]), **fields)
        except Exception:
            log.exception({"event": "chat_create_failed"})
            raise SessionError("Unable to create chat.") from None
        log.info({"event": "chat_created", "chat_id": chat.id, "mode": chat.mode, "provider": chat.provider})
        return chat

    def _resolve_project(self) -> ResolvedTurn:
        project_id = self.request.project_id
        if not self.access.can_access_project(self.caller.user_id, project_id):
            raise SessionError("Access denied.")
        project = self.projects.get_project(project_id)
        if project is None:
            raise SessionError("Access denied.")
        chat = self._load_owned_chat("project", project_id)
        if not project.vector_store_id:
            raise SessionError(NO_VECTOR_STORE)
        provider = self._provider(PROJECT_PROVIDER)
        model = project.model or self.settings.default_project_model
        options = CompletionOptions(
            instructions=project.instructions or self.settings.assistant_instructions or None,
            vector_store_id=project.vector_store_id,
            max_results=project.max_results,
        )
        if chat is None:
            chat = self._create_chat(mode="project", provider=PROJECT_PROVIDER, model=model, project_id=project_id)
        return ResolvedTurn(chat=chat, provider=provider, model=model, options=options, count_before=chat.message_count)

    def _resolve_general(self) -> ResolvedTurn:
        chat = self._load_owned_chat("general")
        if chat is not None:
            provider_id = chat.provider
            model = self.request.model or chat.model or ""
        else:
            provider_id = self.request.provider or ""
            model = self.request.model or ""
        provider = self._provider(provider_id)
        if not model:
            raise SessionError("Model is required.")
        instructions = (chat.instructions if chat is not None else None) or self.settings.assistant_instructions
        options = CompletionOptions(instructions=instructions or None)
        if chat is None:
            chat = self._create_chat(mode="general", provider=provider_id, model=model)
        return ResolvedTurn(chat=chat, provider=provider, model=model, options=options, count_before=chat.message_count)

    # ---------------- Streaming / Persisting ----------------

    def _save_user_message(self, chat: Chat) -> None:
        metadata = {"images": self._images} if self._images else None
        try:
            repo.save_message(chat.id, "user", self._user_content, metadata)
        except Exception:
            log.exception({"event": "user_message_save_failed", "chat_id": chat.id})
            raise SessionError("Unable to save message.") from None

    def _persist_assistant(self) -> None:
        self.turn.pending_persist = False
        text = self.turn.text
        if not text.strip() or self._chat_id is None:
            return
        metadata = {"sources": [s.model_dump() for s in self.turn.sources]} if self.turn.sources else None
        try:
            repo.save_message(self._chat_id, "assistant", text, metadata)
            self.turn.assistant_saved = True
        except Exception:
            # The reply already reached the browser; only durability is affected
            log.exception({"event": "assistant_message_save_failed", "chat_id": self._chat_id})

    # ---------------- TitleCheck ----------------

    async def _title_check(self, turn: ResolvedTurn) -> Optional[TitleUpdateEvent]:
        try:
            chat = repo.get_chat(turn.chat.id)
            if chat is None or turn.count_before >= 2 or chat.message_count != 2:
                return None
            if not is_placeholder_title(chat.title):
                return None
            title = await self.title_generator(
                self._user_content, self.turn.text, credentials=self.credentials, settings=self.settings
            )
            repo.update_chat_title(chat.id, title)
        except Exception:
            log.exception({"event": "title_update_failed", "chat_id": turn.chat.id})
            return None
        CP_TITLES.inc()
        return TitleUpdateEvent(chat_id=turn.chat.id, title=title)
