# chatprojects/providers/openai.py
from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

from chatprojects.providers.base import BaseProvider, Messages, UpstreamError, error_text
from chatprojects.providers.events import (
    CompletionOptions,
    CompletionResult,
    ContentEvent,
    ErrorEvent,
    SourcesEvent,
    StatusEvent,
    StreamEvent,
    dedupe_sources,
)

SEARCHING_STATUS = "Searching files..."


def extract_chat_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if choices:
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        if isinstance(content, str) and content:
            return content
    # Some gateways answer with a flat {"response": "..."} body
    response = data.get("response")
    return response if isinstance(response, str) else ""


def extract_response_text(data: Dict[str, Any]) -> str:
    """Concatenate every ``output_text`` part of a Responses API result."""
    parts: List[str] = []
    for item in data.get("output") or []:
        for content in (item or {}).get("content") or []:
            if (content or {}).get("type") == "output_text":
                parts.append(content.get("text") or "")
    if parts:
        return "".join(parts)
    text = data.get("output_text")
    return text if isinstance(text, str) else ""


class ChatCompletionsProvider(BaseProvider):
    """Adapter for the OpenAI-compatible ``chat/completions`` wire format."""

    default_temperature: float = 0.7
    default_max_tokens: Optional[int] = None

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _supports_temperature(self, model: str) -> bool:
        return True

    def _format_messages(self, messages: Messages, instructions: Optional[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        if instructions:
            out.append({"role": "system", "content": instructions})
        for m in messages:
            role = m.get("role", "user")
            content = m.get("content") or ""
            images = m.get("images") or []
            if images and role == "user":
                parts: List[Dict[str, Any]] = [{"type": "text", "text": content}]
                for img in images:
                    parts.append({"type": "image_url", "image_url": {"url": img["dataUrl"]}})
                out.append({"role": role, "content": parts})
            else:
                out.append({"role": role, "content": content})
        return out

    def _chat_payload(
        self, messages: Messages, model: str, options: CompletionOptions, stream: bool
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._format_messages(messages, options.instructions),
        }
        if stream:
            payload["stream"] = True
        if self._supports_temperature(model):
            payload["temperature"] = (
                options.temperature if options.temperature is not None else self.default_temperature
            )
        max_tokens = options.max_tokens or self.default_max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    async def _stream_events(
        self, messages: Messages, model: str, options: CompletionOptions
    ) -> AsyncIterator[StreamEvent]:
        payload = self._chat_payload(messages, model, options, stream=True)
        async for raw in self._iter_sse(self._url("chat/completions"), payload):
            obj = raw.json()
            if obj is None:
                continue
            if obj.get("error"):
                yield ErrorEvent(message=error_text(obj))
                continue
            choices = obj.get("choices") or []
            if not choices:
                continue
            delta = (choices[0] or {}).get("delta") or {}
            text = delta.get("content")
            if isinstance(text, str) and text:
                yield ContentEvent(text=text)

    async def _complete(self, messages: Messages, model: str, options: CompletionOptions) -> CompletionResult:
        payload = self._chat_payload(messages, model, options, stream=False)
        data = await self._post_json(self._url("chat/completions"), payload)
        content = extract_chat_text(data)
        if not content:
            raise UpstreamError(f"Invalid response from {self.name} API.")
        return CompletionResult(
            content=content,
            metadata={"model": data.get("model", model), "usage": data.get("usage")},
        )

    async def validate_api_key(self, api_key: str) -> bool:
        return await self._probe("GET", self._url("models"), {"Authorization": f"Bearer {api_key}"})


class OpenAIProvider(ChatCompletionsProvider):
    identifier = "openai"
    name = "OpenAI"
    models = {
        "gpt-5.2": "GPT-5.2 (Latest)",
        "gpt-5.2-pro": "GPT-5.2 Pro",
        "gpt-5.2-chat-latest": "GPT-5.2 Instant",
        "gpt-5-mini": "GPT-5 Mini",
        "gpt-5-nano": "GPT-5 Nano",
        "gpt-5.1": "GPT-5.1",
        "gpt-5": "GPT-5",
        "o1-preview": "O1 Preview",
        "o1-mini": "O1 Mini",
        "gpt-4o": "GPT-4o",
        "gpt-4o-mini": "GPT-4o Mini",
    }

    def _supports_temperature(self, model: str) -> bool:
        # Reasoning model families reject a custom temperature
        return not model.startswith(("gpt-5", "o1", "o3", "o4"))

    def _format_input(self, messages: Messages) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in messages:
            role = m.get("role", "user")
            content = m.get("content") or ""
            images = m.get("images") or []
            if images and role == "user":
                parts: List[Dict[str, Any]] = [{"type": "input_text", "text": content}]
                for img in images:
                    parts.append({"type": "input_image", "image_url": img["dataUrl"]})
                out.append({"role": role, "content": parts})
            else:
                out.append({"role": role, "content": content})
        return out

    def _responses_payload(self, messages: Messages, model: str, options: CompletionOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "input": self._format_input(messages)}
        if options.instructions:
            payload["instructions"] = options.instructions
        return payload

    async def _stream_events(
        self, messages: Messages, model: str, options: CompletionOptions
    ) -> AsyncIterator[StreamEvent]:
        if not options.vector_store_id:
            async for event in super()._stream_events(messages, model, options):
                yield event
            return
        async for event in self._stream_file_search(messages, model, options):
            yield event

    async def _stream_file_search(
        self, messages: Messages, model: str, options: CompletionOptions
    ) -> AsyncIterator[StreamEvent]:
        tool: Dict[str, Any] = {"type": "file_search", "vector_store_ids": [options.vector_store_id]}
        if options.max_results:
            tool["max_num_results"] = options.max_results
        payload = self._responses_payload(messages, model, options)
        payload["stream"] = True
        payload["tools"] = [tool]

        search_results: List[Dict[str, Any]] = []
        annotations: List[Dict[str, Any]] = []
        async for raw in self._iter_sse(self._url("responses"), payload):
            obj = raw.json()
            if obj is None:
                continue
            etype = obj.get("type") or raw.event_type
            if etype == "response.output_text.delta":
                delta = obj.get("delta")
                if isinstance(delta, str) and delta:
                    yield ContentEvent(text=delta)
            elif etype in ("response.file_search_call.searching", "response.file_search_call.in_progress"):
                yield StatusEvent(text=SEARCHING_STATUS)
            elif etype == "response.file_search_call.completed":
                search_results.extend(r for r in obj.get("results") or [] if isinstance(r, dict))
            elif etype == "response.output_text.annotation.added":
                annotation = obj.get("annotation") or {}
                if annotation.get("filename"):
                    annotations.append(annotation)
            elif etype == "error":
                yield ErrorEvent(message=error_text(obj))
            elif etype == "response.failed":
                yield ErrorEvent(message=error_text(obj.get("response") or {}))

        sources = dedupe_sources(search_results or annotations)
        if sources:
            yield SourcesEvent(sources=sources)

    async def _complete(self, messages: Messages, model: str, options: CompletionOptions) -> CompletionResult:
        payload = self._responses_payload(messages, model, options)
        data = await self._post_json(self._url("responses"), payload)
        content = extract_response_text(data)
        if not content:
            raise UpstreamError("Invalid response from OpenAI API.")
        return CompletionResult(
            content=content,
            metadata={"model": data.get("model", model), "usage": data.get("usage"), "response_id": data.get("id")},
        )
