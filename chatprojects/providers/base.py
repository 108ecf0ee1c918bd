# chatprojects/providers/base.py
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chatprojects.core.settings import AppSettings
from chatprojects.providers.events import (
    CompletionOptions,
    CompletionResult,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
)
from chatprojects.providers.sse import RawEvent, SSEFrameParser

Messages = List[Dict[str, Any]]


class UpstreamError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def error_text(payload: Any) -> str:
    """Best-effort human message out of a vendor error payload."""
    if isinstance(payload, dict):
        inner = payload.get("error", payload)
        if isinstance(inner, dict):
            return str(inner.get("message") or inner.get("type") or "Unknown error")
        if isinstance(inner, str):
            return inner
        return str(payload.get("message") or "Unknown error")
    if isinstance(payload, str) and payload:
        return payload
    return "Unknown error"


class BaseProvider:
    """Common plumbing for vendor adapters.

    Subclasses implement ``_stream_events`` (normalized events, no terminal ``done``)
    and ``_complete``. ``stream_completion`` wraps the former so every invocation ends
    with exactly one ``done`` and upstream failures arrive as a single ``error`` event.
    """

    identifier: str = ""
    name: str = ""
    models: Dict[str, str] = {}

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        *,
        timeout: float = 300.0,
        connect_timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key or None
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.log = logging.getLogger(f"app.provider.{self.identifier}")

    @classmethod
    def from_settings(cls, api_key: Optional[str], settings: AppSettings) -> "BaseProvider":
        return cls(
            api_key,
            getattr(settings, f"{cls.identifier}_base_url"),
            timeout=settings.provider_timeout_sec,
            connect_timeout=settings.provider_connect_timeout_sec,
        )

    def has_credential(self) -> bool:
        return bool(self.api_key)

    def get_available_models(self) -> Dict[str, str]:
        return dict(self.models)

    def _url(self, path: str) -> str:
        return self.base_url + path.lstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _check_ready(self, messages: Messages) -> None:
        if not self.has_credential():
            raise UpstreamError(f"{self.name} API key is not configured.")
        if not messages:
            raise UpstreamError("No messages provided.")

    async def stream_completion(
        self, messages: Messages, model: str, options: Optional[CompletionOptions] = None
    ) -> AsyncIterator[StreamEvent]:
        opts = options or CompletionOptions()
        try:
            self._check_ready(messages)
            async for event in self._stream_events(messages, model, opts):
                yield event
        except UpstreamError as exc:
            self.log.warning({"event": "upstream_error", "model": model, "status": exc.status_code, "error": exc.message})
            yield ErrorEvent(message=exc.message)
        except httpx.HTTPError as exc:
            self.log.warning({"event": "transport_error", "model": model, "error": repr(exc)})
            yield ErrorEvent(message=f"Connection error: {str(exc) or exc.__class__.__name__}")
        except Exception as exc:
            self.log.exception({"event": "stream_failed", "model": model})
            yield ErrorEvent(message=f"Streaming failed: {exc}")
        yield DoneEvent()

    async def run_completion(
        self, messages: Messages, model: str, options: Optional[CompletionOptions] = None
    ) -> CompletionResult:
        self._check_ready(messages)
        try:
            return await self._complete(messages, model, options or CompletionOptions())
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Connection error: {str(exc) or exc.__class__.__name__}") from exc

    async def validate_api_key(self, api_key: str) -> bool:
        raise NotImplementedError

    async def _stream_events(
        self, messages: Messages, model: str, options: CompletionOptions
    ) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError
        yield  # pragma: no cover

    async def _complete(self, messages: Messages, model: str, options: CompletionOptions) -> CompletionResult:
        raise NotImplementedError

    # --- HTTP helpers ---

    def _status_error(self, status: int, body: bytes) -> UpstreamError:
        detail = ""
        try:
            detail = error_text(json.loads(body))
        except (json.JSONDecodeError, UnicodeDecodeError):
            detail = ""
        self.log.warning({"event": "upstream_status", "status": status, "body": body[:500].decode("utf-8", "replace")})
        msg = f"API error (HTTP {status})"
        if detail and detail != "Unknown error":
            msg = f"{msg}: {detail}"
        return UpstreamError(msg, status_code=status)

    async def _iter_sse(
        self,
        url: str,
        payload: Dict[str, Any],
        params: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[RawEvent]:
        """Decoded frames of a streaming POST; stops at the ``[DONE]`` sentinel."""
        parser = SSEFrameParser()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            async with client.stream("POST", url, json=payload, headers=self._headers(), params=params) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise self._status_error(resp.status_code, body)
                async for chunk in resp.aiter_bytes():
                    for raw in parser.feed(chunk):
                        if raw.is_done:
                            return
                        yield raw
        for raw in parser.flush():
            if raw.is_done:
                return
            yield raw

    async def _post_json(
        self, url: str, payload: Dict[str, Any], params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json=payload, headers=self._headers(), params=params)
        if resp.status_code >= 400:
            raise self._status_error(resp.status_code, resp.content)
        try:
            data = resp.json()
        except json.JSONDecodeError:
            raise UpstreamError(f"Invalid response from {self.name} API.") from None
        if not isinstance(data, dict):
            raise UpstreamError(f"Invalid response from {self.name} API.")
        if "error" in data and data["error"]:
            raise UpstreamError(error_text(data))
        return data

    async def _probe(self, method: str, url: str, headers: Dict[str, str], **kwargs: Any) -> bool:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            self.log.info({"event": "validate_failed", "error": repr(exc)})
            return False
        return resp.status_code == 200
