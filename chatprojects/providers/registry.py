# chatprojects/providers/registry.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from chatprojects.core.collaborators import CredentialStore
from chatprojects.core.settings import AppSettings, get_settings
from chatprojects.providers.anthropic import AnthropicProvider
from chatprojects.providers.base import BaseProvider
from chatprojects.providers.gateways import ChutesProvider, OpenRouterProvider
from chatprojects.providers.gemini import GeminiProvider
from chatprojects.providers.openai import OpenAIProvider

PROVIDERS: Dict[str, Type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "openrouter": OpenRouterProvider,
    "chutes": ChutesProvider,
}


class UnknownProviderError(ValueError):
    pass


def is_known_provider(identifier: Optional[str]) -> bool:
    return identifier in PROVIDERS


def create_provider(
    identifier: str,
    credentials: CredentialStore,
    settings: Optional[AppSettings] = None,
    api_key: Optional[str] = None,
) -> BaseProvider:
    cls = PROVIDERS.get(identifier)
    if cls is None:
        raise UnknownProviderError(identifier)
    s = settings or get_settings()
    key = api_key if api_key is not None else credentials.get_credential(identifier)
    return cls.from_settings(key, s)


def available_providers(credentials: CredentialStore, settings: Optional[AppSettings] = None) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for identifier in PROVIDERS:
        provider = create_provider(identifier, credentials, settings)
        out.append(
            {
                "id": identifier,
                "name": provider.name,
                "has_credential": provider.has_credential(),
                "models": provider.get_available_models(),
            }
        )
    return out


async def validate_credential(identifier: str, api_key: str, settings: Optional[AppSettings] = None) -> bool:
    cls = PROVIDERS.get(identifier)
    if cls is None:
        raise UnknownProviderError(identifier)
    provider = cls.from_settings(api_key, settings or get_settings())
    return await provider.validate_api_key(api_key)
