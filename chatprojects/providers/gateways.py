# chatprojects/providers/gateways.py
from __future__ import annotations

from typing import Dict, Optional

from chatprojects.core.settings import AppSettings
from chatprojects.providers.openai import ChatCompletionsProvider


class OpenRouterProvider(ChatCompletionsProvider):
    identifier = "openrouter"
    name = "OpenRouter"
    models = {"default": "OpenRouter Default Model"}
    default_max_tokens = 2000

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        *,
        site_url: str = "http://localhost",
        app_title: str = "ChatProjects",
        **kwargs,
    ) -> None:
        super().__init__(api_key, base_url, **kwargs)
        self.site_url = site_url
        self.app_title = app_title

    @classmethod
    def from_settings(cls, api_key: Optional[str], settings: AppSettings) -> "OpenRouterProvider":
        return cls(
            api_key,
            settings.openrouter_base_url,
            site_url=settings.openrouter_site_url,
            app_title=settings.openrouter_app_title,
            timeout=settings.provider_timeout_sec,
            connect_timeout=settings.provider_connect_timeout_sec,
        )

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.site_url
        headers["X-Title"] = self.app_title
        return headers


class ChutesProvider(ChatCompletionsProvider):
    identifier = "chutes"
    name = "Chutes"
    models = {"default": "Chutes Default Model"}
    default_max_tokens = 2000
