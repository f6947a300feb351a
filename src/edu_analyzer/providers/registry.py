"""Resolve provider kinds to provider instances once at startup."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from edu_analyzer.config import ProviderSettings
from edu_analyzer.providers.base import AnalysisProvider
from edu_analyzer.providers.catalog import ProviderKind
from edu_analyzer.providers.echo import EchoProvider
from edu_analyzer.providers.http_providers import (
    OPENAI_BASE_URL,
    OPENROUTER_BASE_URL,
    AnthropicProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    YandexProvider,
)

logger = logging.getLogger(__name__)

OPENROUTER_HEADERS = {
    "HTTP-Referer": "https://github.com/edu-analyzer/edu-analyzer",
    "X-Title": "Educational Analyzer",
}


class ProviderRegistry:
    """Immutable mapping of provider kind to provider instance."""

    def __init__(self, providers: Mapping[ProviderKind, AnalysisProvider]) -> None:
        self._providers = dict(providers)

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        *,
        client: httpx.Client | None = None,
    ) -> ProviderRegistry:
        credentials = settings.credentials
        timeout = settings.request_timeout_seconds
        providers: dict[ProviderKind, AnalysisProvider] = {
            ProviderKind.OPENROUTER: OpenAICompatibleProvider(
                ProviderKind.OPENROUTER,
                credentials,
                base_url=OPENROUTER_BASE_URL,
                api_key_field="openrouter_api_key",
                extra_headers=OPENROUTER_HEADERS,
                timeout_seconds=timeout,
                client=client,
            ),
            ProviderKind.OPENAI: OpenAICompatibleProvider(
                ProviderKind.OPENAI,
                credentials,
                base_url=OPENAI_BASE_URL,
                api_key_field="openai_api_key",
                timeout_seconds=timeout,
                client=client,
            ),
            ProviderKind.ANTHROPIC: AnthropicProvider(
                credentials,
                timeout_seconds=timeout,
                client=client,
            ),
            ProviderKind.GOOGLE: GeminiProvider(
                credentials,
                timeout_seconds=timeout,
                client=client,
            ),
            ProviderKind.YANDEX: YandexProvider(
                credentials,
                timeout_seconds=timeout,
                client=client,
            ),
            ProviderKind.ECHO: EchoProvider(),
        }
        configured = [kind.value for kind in ProviderKind if kind.has_credentials(credentials)]
        logger.info("Providers with credentials: %s", ", ".join(configured))
        return cls(providers)

    def get(self, kind: ProviderKind) -> AnalysisProvider:
        try:
            return self._providers[kind]
        except KeyError as error:
            raise KeyError(f"No provider registered for {kind.value!r}") from error

    def close(self) -> None:
        for provider in self._providers.values():
            provider.close()
