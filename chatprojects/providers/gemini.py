# chatprojects/providers/gemini.py
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


def candidate_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    return "".join(p.get("text") or "" for p in parts if isinstance(p, dict))


class GeminiProvider(BaseProvider):
    identifier = "gemini"
    name = "Google Gemini"
    models = {
        "gemini-3-pro-preview": "Gemini 3 Pro (Preview)",
        "gemini-2.5-pro": "Gemini 2.5 Pro",
        "gemini-2.5-flash": "Gemini 2.5 Flash",
        "gemini-2.5-flash-lite": "Gemini 2.5 Flash Lite",
        "gemini-2.0-flash": "Gemini 2.0 Flash",
        "gemini-2.0-flash-lite": "Gemini 2.0 Flash Lite",
    }
    default_max_tokens = 2048
    default_temperature = 0.7

    def _format_contents(self, messages: Messages) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for m in messages:
            role = m.get("role")
            if role == "system":
                continue
            parts: List[Dict[str, Any]] = [{"text": m.get("content") or ""}]
            if role == "user":
                for img in m.get("images") or []:
                    parsed = parse_data_url(img.get("dataUrl", ""))
                    if parsed is None:
                        continue
                    media_type, data = parsed
                    parts.append({"inline_data": {"mime_type": media_type, "data": data}})
            contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})
        return contents

    def _payload(self, messages: Messages, options: CompletionOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": self._format_contents(messages),
            "generationConfig": {
                "temperature": options.temperature if options.temperature is not None else self.default_temperature,
                "maxOutputTokens": options.max_tokens or self.default_max_tokens,
            },
        }
        if options.instructions:
            payload["systemInstruction"] = {"parts": [{"text": options.instructions}]}
        return payload

    async def _stream_events(
        self, messages: Messages, model: str, options: CompletionOptions
    ) -> AsyncIterator[StreamEvent]:
        url = self._url(f"models/{model}:streamGenerateContent")
        params = {"alt": "sse", "key": self.api_key or ""}
        async for raw in self._iter_sse(url, self._payload(messages, options), params=params):
            obj = raw.json()
            if obj is None:
                continue
            if obj.get("error"):
                yield ErrorEvent(message=error_text(obj))
                continue
            text = candidate_text(obj)
            if text:
                yield ContentEvent(text=text)

    async def _complete(self, messages: Messages, model: str, options: CompletionOptions) -> CompletionResult:
        url = self._url(f"models/{model}:generateContent")
        data = await self._post_json(url, self._payload(messages, options), params={"key": self.api_key or ""})
        content = candidate_text(data)
        if not content:
            raise UpstreamError("Invalid response from Google Gemini API.")
        return CompletionResult(content=content, metadata={"model": model, "usage": data.get("usageMetadata")})

    async def validate_api_key(self, api_key: str) -> bool:
        return await self._probe("GET", self._url("models"), {}, params={"key": api_key})
