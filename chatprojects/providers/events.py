# chatprojects/providers/events.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Source(BaseModel):
    file_id: str = ""
    filename: str


class ContentEvent(BaseModel):
    type: Literal["content"] = "content"
    text: str


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    text: str


class SourcesEvent(BaseModel):
    type: Literal["sources"] = "sources"
    sources: List[Source]


class ChatIdEvent(BaseModel):
    type: Literal["chat_id"] = "chat_id"
    id: int


class TitleUpdateEvent(BaseModel):
    type: Literal["title_update"] = "title_update"
    chat_id: int
    title: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


StreamEvent = Union[
    ContentEvent, StatusEvent, SourcesEvent, ChatIdEvent, TitleUpdateEvent, ErrorEvent, DoneEvent
]


class CompletionOptions(BaseModel):
    instructions: Optional[str] = None
    vector_store_id: Optional[str] = None
    max_results: Optional[int] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class CompletionResult(BaseModel):
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


def dedupe_sources(items: Iterable[Dict[str, Any]]) -> List[Source]:
    """Keep the first occurrence of each filename, in arrival order."""
    seen: set[str] = set()
    out: List[Source] = []
    for item in items:
        filename = (item.get("filename") or "").strip()
        if not filename or filename in seen:
            continue
        seen.add(filename)
        out.append(Source(file_id=str(item.get("file_id") or ""), filename=filename))
    return out
