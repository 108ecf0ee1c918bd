# chatprojects/orchestration/titles.py
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional

from chatprojects.core.collaborators import CredentialStore
from chatprojects.core.settings import AppSettings, get_settings
from chatprojects.providers.base import UpstreamError
from chatprojects.providers.registry import UnknownProviderError, create_provider

log = logging.getLogger("app.title")

FALLBACK_TITLE = "New Chat"
_PLACEHOLDER_RE = re.compile(r"^(General )?Chat \d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
_TITLE_PREFIX_RE = re.compile(r"^\s*title\s*:\s*", re.IGNORECASE)
_PROMPT_SNIPPET_CHARS = 1000

TITLE_PROMPT = (
    "Based on this conversation, generate a short, concise title (3-6 words maximum):\n\n"
    "User: {user}\n\n"
    "Assistant: {assistant}\n\n"
    "Respond with ONLY the title, nothing else."
)


def placeholder_title(mode: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return f"General Chat {stamp}" if mode == "general" else f"Chat {stamp}"


def is_placeholder_title(title: Optional[str]) -> bool:
    if not title or not title.strip():
        return True
    return bool(_PLACEHOLDER_RE.match(title.strip()))


def _trim_to_max_chars(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."


def clean_title(raw: str, max_chars: int = 50) -> str:
    title = " ".join((raw or "").split())
    title = _TITLE_PREFIX_RE.sub("", title)
    title = title.strip().strip("\"'`“”‘’").strip()
    return _trim_to_max_chars(title, max_chars)


def fallback_title(user_message: str, words: int = 5) -> str:
    parts = (user_message or "").split()
    if not parts:
        return FALLBACK_TITLE
    title = " ".join(parts[:words])
    if len(parts) > words:
        title += "..."
    return title


async def generate_title(
    user_message: str,
    assistant_message: str,
    *,
    credentials: CredentialStore,
    settings: Optional[AppSettings] = None,
) -> str:
    """Short title for the first exchange of a chat; never raises, never empty."""
    s = settings or get_settings()
    fallback = fallback_title(user_message, s.title_fallback_words)
    try:
        provider = create_provider(s.title_provider, credentials, s)
    except UnknownProviderError:
        log.warning({"event": "title_fallback", "reason": "unknown_provider", "provider": s.title_provider})
        return fallback
    if not provider.has_credential():
        log.info({"event": "title_fallback", "reason": "no_credential", "provider": s.title_provider})
        return fallback

    prompt = TITLE_PROMPT.format(
        user=_trim_to_max_chars(user_message, _PROMPT_SNIPPET_CHARS),
        assistant=_trim_to_max_chars(assistant_message, _PROMPT_SNIPPET_CHARS),
    )
    try:
        result = await provider.run_completion([{"role": "user", "content": prompt}], s.title_model)
    except UpstreamError as exc:
        log.warning({"event": "title_fallback", "reason": "upstream_error", "error": exc.message})
        return fallback
    except Exception:
        log.exception({"event": "title_fallback", "reason": "unexpected"})
        return fallback

    title = clean_title(result.content, s.title_max_chars)
    return title or fallback
