# tests/test_session.py
from __future__ import annotations

from typing import Any, List, Optional

import httpx
import pytest

import chatprojects.orchestration.session as session_module
from chatprojects.core.auth import Caller
from chatprojects.core.collaborators import (
    InMemoryProjectStore,
    ProjectMembershipPolicy,
    ProjectSettings,
    SettingsCredentialStore,
)
from chatprojects.core.settings import AppSettings
from chatprojects.orchestration.session import (
    NO_VECTOR_STORE,
    ChatStreamRequest,
    SessionState,
    StreamingSession,
)
from chatprojects.providers.base import BaseProvider, UpstreamError
from chatprojects.providers.events import (
    ChatIdEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    Source,
    SourcesEvent,
    StatusEvent,
    TitleUpdateEvent,
)
from chatprojects.storage import repo

PNG = "data:image/png;base64,iVBORw0KGgo="


class ScriptedProvider(BaseProvider):
    """Adapter double that plays back a fixed list of events or exceptions."""

    identifier = "openai"
    name = "Scripted"

    def __init__(self, script: List[Any], api_key: Optional[str] = "sk-test") -> None:
        super().__init__(api_key, "http://scripted.invalid/")
        self.script = script
        self.calls: List[Any] = []

    async def _stream_events(self, messages, model, options):
        self.calls.append({"messages": messages, "model": model, "options": options})
        for step in self.script:
            if isinstance(step, Exception):
                raise step
            yield step


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(assistant_instructions="", history_limit=20)


@pytest.fixture
def projects() -> InMemoryProjectStore:
    return InMemoryProjectStore(
        [
            ProjectSettings(id=7, name="Handbook", instructions="Cite the files.", vector_store_id="vs_7", max_results=4),
            ProjectSettings(id=8, name="Empty"),
            ProjectSettings(id=9, name="Private", vector_store_id="vs_9", allowed_user_ids=[42]),
        ]
    )


@pytest.fixture
def credentials(settings) -> SettingsCredentialStore:
    store = SettingsCredentialStore(settings)
    for name in ("openai", "anthropic"):
        store.set_credential(name, "sk-test")
    return store


@pytest.fixture
def use_provider(monkeypatch):
    def _install(provider: BaseProvider) -> BaseProvider:
        seen: List[str] = []

        def fake_create(identifier, credentials, settings=None, api_key=None):
            seen.append(identifier)
            provider.identifier = identifier
            return provider

        monkeypatch.setattr(session_module, "create_provider", fake_create)
        provider.requested = seen
        return provider

    return _install


class TitleRecorder:
    def __init__(self, title: str = "Trip Plans") -> None:
        self.title = title
        self.calls: List[Any] = []

    async def __call__(self, user_message, assistant_message, *, credentials, settings=None):
        self.calls.append((user_message, assistant_message))
        return self.title


def make_session(request, *, credentials, projects, settings, user_id: Optional[int] = 1, titles=None):
    caller = Caller(user_id=user_id) if user_id is not None else None
    return StreamingSession(
        request,
        caller,
        credentials=credentials,
        projects=projects,
        access=ProjectMembershipPolicy(projects),
        settings=settings,
        title_generator=titles or TitleRecorder(),
    )


async def run(session: StreamingSession) -> list:
    return [ev async for ev in session.events()]


def _assistant_rows(chat_id: int) -> list:
    return [m for m in repo.get_messages(chat_id) if m.role == "assistant"]


@pytest.mark.asyncio
async def test_project_turn_full_event_order(credentials, projects, settings, use_provider) -> None:
    provider = use_provider(
        ScriptedProvider(
            [
                StatusEvent(text="Searching files..."),
                ContentEvent(text="Hel"),
                ContentEvent(text="lo"),
                SourcesEvent(sources=[Source(file_id="f1", filename="handbook.pdf")]),
            ]
        )
    )
    titles = TitleRecorder()
    session = make_session(
        {"message": "Hello", "project_id": 7}, credentials=credentials, projects=projects, settings=settings, titles=titles
    )
    events = await run(session)

    kinds = [e.type for e in events]
    assert kinds == ["chat_id", "status", "content", "content", "sources", "title_update", "done"]
    chat_id = events[0].id
    assert events[-2] == TitleUpdateEvent(chat_id=chat_id, title="Trip Plans")
    assert session.state is SessionState.DONE

    chat = repo.get_chat(chat_id)
    assert chat.mode == "project" and chat.project_id == 7 and chat.provider == "openai"
    assert chat.message_count == 2
    assert chat.title == "Trip Plans"
    rows = repo.get_messages(chat_id)
    assert [(m.role, m.content) for m in rows] == [("user", "Hello"), ("assistant", "Hello")]
    assert rows[1].meta == {"sources": [{"file_id": "f1", "filename": "handbook.pdf"}]}
    assert titles.calls == [("Hello", "Hello")]

    call = provider.calls[0]
    assert provider.requested == ["openai"]
    assert call["options"].vector_store_id == "vs_7"
    assert call["options"].max_results == 4
    assert call["options"].instructions == "Cite the files."
    assert call["messages"] == [{"role": "user", "content": "Hello"}]


@pytest.mark.asyncio
async def test_new_chat_id_precedes_first_content(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="a"), ContentEvent(text="b")]))
    events = await run(
        make_session(
            {"message": "hi", "mode": "general", "provider": "openai", "model": "gpt-4o"},
            credentials=credentials,
            projects=projects,
            settings=settings,
        )
    )
    kinds = [e.type for e in events]
    assert kinds.index("chat_id") < kinds.index("content")
    assert kinds.count("done") == 1 and kinds[-1] == "done"


@pytest.mark.asyncio
async def test_partial_reply_is_persisted_when_upstream_fails(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="Hel"), ContentEvent(text="lo"), UpstreamError("API error (HTTP 502)")]))
    session = make_session({"message": "Say hello", "project_id": 7}, credentials=credentials, projects=projects, settings=settings)
    events = await run(session)

    assert [e.type for e in events][-3:] == ["error", "title_update", "done"]
    error = next(e for e in events if isinstance(e, ErrorEvent))
    assert error.message == "API error (HTTP 502)"
    chat_id = events[0].id
    assert [m.content for m in _assistant_rows(chat_id)] == ["Hello"]


@pytest.mark.asyncio
async def test_empty_reply_is_not_persisted(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([UpstreamError("API error (HTTP 401): bad key")]))
    titles = TitleRecorder()
    session = make_session(
        {"message": "Hi", "project_id": 7}, credentials=credentials, projects=projects, settings=settings, titles=titles
    )
    events = await run(session)

    assert [e.type for e in events] == ["chat_id", "error", "done"]
    chat_id = events[0].id
    assert _assistant_rows(chat_id) == []
    assert repo.get_chat(chat_id).message_count == 1
    assert titles.calls == []


@pytest.mark.asyncio
async def test_title_fires_only_when_count_reaches_two(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="Answer")]))
    titles = TitleRecorder()

    first = await run(
        make_session({"message": "Q1", "project_id": 7}, credentials=credentials, projects=projects, settings=settings, titles=titles)
    )
    chat_id = first[0].id
    assert any(isinstance(e, TitleUpdateEvent) for e in first)

    # Reset to a placeholder so only the count can block the second run
    repo.update_chat_title(chat_id, "Chat 2026-01-01 10:00:00")
    second = await run(
        make_session(
            {"message": "Q2", "project_id": 7, "chat_id": chat_id},
            credentials=credentials,
            projects=projects,
            settings=settings,
            titles=titles,
        )
    )
    assert repo.get_chat(chat_id).message_count == 4
    assert not any(isinstance(e, TitleUpdateEvent) for e in second)
    assert len(titles.calls) == 1
    assert second[0] == ChatIdEvent(id=chat_id)


@pytest.mark.asyncio
async def test_custom_title_is_never_overwritten(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="Answer")]))
    chat = repo.create_chat(user_id=1, mode="general", provider="openai", model="gpt-4o", title="My own title")
    titles = TitleRecorder()
    events = await run(
        make_session(
            {"message": "Hi", "chat_id": chat.id, "mode": "general"},
            credentials=credentials,
            projects=projects,
            settings=settings,
            titles=titles,
        )
    )
    assert [e.type for e in events] == ["chat_id", "content", "done"]
    assert repo.get_chat(chat.id).title == "My own title"
    assert titles.calls == []


@pytest.mark.asyncio
async def test_transport_failure_mid_stream_keeps_partial_answer(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="Partial answer"), httpx.ReadError("connection reset")]))
    events = await run(make_session({"message": "Go", "project_id": 7}, credentials=credentials, projects=projects, settings=settings))

    kinds = [e.type for e in events]
    assert kinds.index("content") < kinds.index("error")
    assert events[-1] == DoneEvent()
    assert [m.content for m in _assistant_rows(events[0].id)] == ["Partial answer"]


@pytest.mark.asyncio
async def test_project_without_vector_store_creates_nothing(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="never")]))
    before = len(repo.list_chats(1))
    events = await run(make_session({"message": "Hi", "project_id": 8}, credentials=credentials, projects=projects, settings=settings))

    assert events == [ErrorEvent(message=NO_VECTOR_STORE), DoneEvent()]
    assert len(repo.list_chats(1)) == before


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_body, user_id, message",
    [
        ({"message": "hi", "project_id": 7}, None, "You must be logged in."),
        ({"message": "hi", "mode": "project"}, 1, "Project ID is required."),
        ({"message": "   ", "project_id": 7}, 1, "Message is required."),
        ({"message": "", "mode": "general", "provider": "openai", "model": "m"}, 1, "Message or image is required."),
        ({"message": "hi", "mode": "general", "model": "m"}, 1, "Provider is required."),
        ({"message": "hi", "mode": "general", "provider": "openai"}, 1, "Model is required."),
        ({"message": "hi", "mode": "general", "provider": "lmstudio", "model": "m"}, 1, "Provider not available."),
        ({"message": "hi", "project_id": 9}, 1, "Access denied."),
        ({"message": "hi", "project_id": 404}, 1, "Access denied."),
        ({"message": "hi", "project_id": 7, "chat_id": 987654}, 1, "Invalid chat ID or access denied."),
        (
            {"message": "hi", "mode": "general", "provider": "openai", "model": "m", "images": [{"dataUrl": "nope"}]},
            1,
            "Invalid image data format.",
        ),
    ],
)
async def test_rejected_requests_yield_one_error_then_done(
    request_body, user_id, message, credentials, projects, settings
) -> None:
    before = len(repo.list_chats(1))
    session = make_session(request_body, credentials=credentials, projects=projects, settings=settings, user_id=user_id)
    events = await run(session)

    assert events == [ErrorEvent(message=message), DoneEvent()]
    assert session.state is SessionState.ERROR_EXIT
    assert len(repo.list_chats(1)) == before


@pytest.mark.asyncio
async def test_missing_credential_is_reported_before_chat_creation(projects, settings) -> None:
    store = SettingsCredentialStore(settings)
    store.set_credential("openai", None)
    before = len(repo.list_chats(1))
    events = await run(make_session({"message": "hi", "project_id": 7}, credentials=store, projects=projects, settings=settings))
    assert events == [ErrorEvent(message="API key not configured for this provider."), DoneEvent()]
    assert len(repo.list_chats(1)) == before


@pytest.mark.asyncio
async def test_foreign_chat_is_rejected(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="x")]))
    chat = repo.create_chat(user_id=2, mode="general", provider="openai", model="gpt-4o")
    events = await run(
        make_session({"message": "hi", "chat_id": chat.id, "mode": "general"}, credentials=credentials, projects=projects, settings=settings)
    )
    assert events == [ErrorEvent(message="Invalid chat ID or access denied."), DoneEvent()]
    assert repo.count_messages(chat.id) == 0


@pytest.mark.asyncio
async def test_existing_general_chat_keeps_stored_provider(credentials, projects, settings, use_provider) -> None:
    provider = use_provider(ScriptedProvider([ContentEvent(text="Bonjour")]))
    chat = repo.create_chat(
        user_id=1, mode="general", provider="anthropic", model="claude-haiku-4-5-20251001", instructions="Answer in French."
    )
    repo.save_message(chat.id, "user", "earlier")
    repo.save_message(chat.id, "assistant", "plus tôt")

    await run(
        make_session(
            {"message": "Hello", "chat_id": chat.id, "mode": "general", "provider": "openai", "model": "claude-sonnet-4-5-20250929"},
            credentials=credentials,
            projects=projects,
            settings=settings,
        )
    )
    call = provider.calls[0]
    assert provider.requested == ["anthropic"]
    assert call["model"] == "claude-sonnet-4-5-20250929"
    assert call["options"].instructions == "Answer in French."
    assert call["options"].vector_store_id is None
    assert [m["content"] for m in call["messages"]] == ["earlier", "plus tôt", "Hello"]


@pytest.mark.asyncio
async def test_image_only_general_turn_uses_default_prompt(credentials, projects, settings, use_provider) -> None:
    provider = use_provider(ScriptedProvider([ContentEvent(text="A cat.")]))
    events = await run(
        make_session(
            {"message": "", "mode": "general", "provider": "openai", "model": "gpt-4o", "images": [{"dataUrl": PNG, "name": "cat.png"}]},
            credentials=credentials,
            projects=projects,
            settings=settings,
        )
    )
    chat_id = events[0].id
    user_row = repo.get_messages(chat_id)[0]
    assert user_row.content == "What is in this image?"
    assert user_row.meta == {"images": [{"dataUrl": PNG, "name": "cat.png", "type": "image/png"}]}
    sent = provider.calls[0]["messages"][-1]
    assert sent["images"][0]["dataUrl"] == PNG


@pytest.mark.asyncio
async def test_assistant_save_failure_is_silent(credentials, projects, settings, use_provider, monkeypatch) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="Reply")]))
    real_save = repo.save_message

    def flaky_save(chat_id, role, content, metadata=None):
        if role == "assistant":
            raise RuntimeError("disk full")
        return real_save(chat_id, role, content, metadata)

    monkeypatch.setattr(repo, "save_message", flaky_save)
    session = make_session({"message": "Hi", "project_id": 7}, credentials=credentials, projects=projects, settings=settings)
    events = await run(session)

    assert [e.type for e in events] == ["chat_id", "content", "done"]
    assert session.turn.assistant_saved is False


@pytest.mark.asyncio
async def test_closing_mid_stream_persists_partial_content(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="First "), ContentEvent(text="second"), ContentEvent(text=" third")]))
    session = make_session({"message": "Tell me", "project_id": 7}, credentials=credentials, projects=projects, settings=settings)
    stream = session.events()
    chat_event = await stream.__anext__()
    assert (await stream.__anext__()).text == "First "
    assert (await stream.__anext__()).text == "second"
    await stream.aclose()

    assert [m.content for m in _assistant_rows(chat_event.id)] == ["First second"]
    assert session.turn.pending_persist is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"message": "hi", "project_id": 7, "chat_id": "abc"},
        {"message": "hi", "mode": "weird", "provider": "openai", "model": "m"},
        {"message": "hi", "mode": "general", "provider": "openai", "model": "m", "images": "nope"},
        ["not", "an", "object"],
        None,
    ],
)
async def test_malformed_body_is_reported_in_stream(body, credentials, projects, settings) -> None:
    before = len(repo.list_chats(1))
    session = make_session(body, credentials=credentials, projects=projects, settings=settings)
    events = await run(session)

    assert events == [ErrorEvent(message="Invalid request."), DoneEvent()]
    assert session.state is SessionState.ERROR_EXIT
    assert len(repo.list_chats(1)) == before


@pytest.mark.asyncio
async def test_typed_request_skips_parsing(credentials, projects, settings, use_provider) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="ok")]))
    request = ChatStreamRequest(message="hi", mode="general", provider="openai", model="gpt-4o", chat_id="")
    events = await run(make_session(request, credentials=credentials, projects=projects, settings=settings))
    assert [e.type for e in events] == ["chat_id", "content", "done"]


@pytest.mark.asyncio
async def test_unexpected_failure_hides_internal_detail(credentials, projects, settings, use_provider, monkeypatch) -> None:
    use_provider(ScriptedProvider([ContentEvent(text="never")]))

    def broken_history(*args, **kwargs):
        raise KeyError("internal column name")

    monkeypatch.setattr(session_module, "build_history", broken_history)
    session = make_session({"message": "Hi", "project_id": 7}, credentials=credentials, projects=projects, settings=settings)
    events = await run(session)

    assert [e.type for e in events] == ["chat_id", "error", "done"]
    assert events[1] == ErrorEvent(message="Server error.")
    assert "internal column name" not in events[1].message
    assert _assistant_rows(events[0].id) == []
