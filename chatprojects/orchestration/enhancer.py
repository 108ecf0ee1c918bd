# chatprojects/orchestration/enhancer.py
from __future__ import annotations

from typing import Optional

from chatprojects.core.collaborators import CredentialStore
from chatprojects.core.settings import AppSettings, get_settings
from chatprojects.providers.base import UpstreamError
from chatprojects.providers.events import CompletionOptions
from chatprojects.providers.registry import create_provider

ENHANCE_SYSTEM_PROMPT = (
    "You are a prompt enhancement expert. Improve the given prompt to make it more effective, "
    "clear, and actionable while maintaining the user's original intent."
)


async def enhance_prompt(
    prompt: str,
    *,
    credentials: CredentialStore,
    provider: str = "openai",
    model: str = "gpt-4o",
    context: str = "",
    settings: Optional[AppSettings] = None,
) -> str:
    """Rewrite ``prompt`` with a single non-streaming completion. Raises UpstreamError."""
    instructions = ENHANCE_SYSTEM_PROMPT
    if context:
        instructions += f" Context: {context}"
    adapter = create_provider(provider, credentials, settings or get_settings())
    result = await adapter.run_completion(
        [{"role": "user", "content": prompt}], model, CompletionOptions(instructions=instructions)
    )
    text = result.content.strip()
    if not text:
        raise UpstreamError("Invalid API response.")
    return text
