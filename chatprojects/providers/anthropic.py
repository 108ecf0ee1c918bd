# chatprojects/providers/anthropic.py
from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List

from chatprojects.providers.base import BaseProvider, Messages, UpstreamError, error_text
from chatprojects.providers.events import (
    CompletionOptions,
    CompletionResult,
    ContentEvent,
    ErrorEvent,
    StreamEvent,
)
from chatprojects.utils.images import parse_data_url

API_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    identifier = "anthropic"
    name = "Anthropic"
    models = {
        "claude-opus-4-5-20251101": "Claude Opus 4.5",
        "claude-sonnet-4-5-20250929": "Claude Sonnet 4.5",
        "claude-haiku-4-5-20251001": "Claude Haiku 4.5",
        "claude-3-5-sonnet-20241022": "Claude 3.5 Sonnet",
        "claude-3-5-haiku-20241022": "Claude 3.5 Haiku",
    }
    default_max_tokens = 4096
    default_temperature = 0.7

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": API_VERSION,
            "Content-Type": "application/json",
        }

    def _format_messages(self, messages: Messages) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in messages:
            role = m.get("role")
            if role == "system":
                continue
            content = m.get("content") or ""
            images = m.get("images") or []
            if images and role == "user":
                blocks: List[Dict[str, Any]] = []
                for img in images:
                    parsed = parse_data_url(img.get("dataUrl", ""))
                    if parsed is None:
                        continue
                    media_type, data = parsed
                    blocks.append({"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}})
                blocks.append({"type": "text", "text": content})
                out.append({"role": role, "content": blocks})
            else:
                out.append({"role": role, "content": content})
        return out

    def _payload(self, messages: Messages, model: str, options: CompletionOptions, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._format_messages(messages),
            "max_tokens": options.max_tokens or self.default_max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.default_temperature,
        }
        if options.instructions:
            payload["system"] = options.instructions
        if stream:
            payload["stream"] = True
        return payload

    async def _stream_events(
        self, messages: Messages, model: str, options: CompletionOptions
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(messages, model, options, stream=True)
        async for raw in self._iter_sse(self._url("messages"), payload):
            obj = raw.json()
            if obj is None:
                continue
            etype = obj.get("type") or raw.event_type
            if etype == "content_block_delta":
                text = (obj.get("delta") or {}).get("text")
                if isinstance(text, str) and text:
                    yield ContentEvent(text=text)
            elif etype == "error" or obj.get("error"):
                yield ErrorEvent(message=error_text(obj))

    async def _complete(self, messages: Messages, model: str, options: CompletionOptions) -> CompletionResult:
        data = await self._post_json(self._url("messages"), self._payload(messages, model, options, stream=False))
        content = "".join(
            block.get("text") or ""
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not content:
            raise UpstreamError("Invalid response from Anthropic API.")
        return CompletionResult(
            content=content,
            metadata={"model": data.get("model", model), "usage": data.get("usage"), "stop_reason": data.get("stop_reason")},
        )

    async def validate_api_key(self, api_key: str) -> bool:
        headers = {"x-api-key": api_key, "anthropic-version": API_VERSION, "Content-Type": "application/json"}
        body = {"model": "claude-3-haiku-20240307", "max_tokens": 10, "messages": [{"role": "user", "content": "Hi"}]}
        return await self._probe("POST", self._url("messages"), headers, json=body)
