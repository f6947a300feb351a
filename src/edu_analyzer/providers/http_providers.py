"""Concrete HTTP providers built on httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from edu_analyzer.config import ProviderCredentials
from edu_analyzer.providers.base import (
    SYSTEM_PROMPT,
    GenerateOptions,
    ProviderResponse,
)
from edu_analyzer.providers.catalog import ModelSpec, ProviderKind
from edu_analyzer.providers.errors import AuthError, BadOutput
from edu_analyzer.providers.failure_classifier import error_from_response, error_from_transport

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_API_VERSION = "2023-06-01"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
YANDEX_COMPLETION_URL = "https://llm.api.cloud.yandex.net/foundationModels/v1/completion"


class HttpProvider:
    """Shared request/response handling; subclasses build payloads and read replies."""

    kind: ProviderKind

    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._credentials = credentials
        self._timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=10.0))

    def complete(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> ProviderResponse:
        if not self.kind.has_credentials(self._credentials):
            raise AuthError(
                f"{self.kind.value} credentials are not configured",
                provider=self.kind.value,
            )

        url, headers, payload = self._build_request(prompt, spec, options)
        timeout = options.timeout_seconds or self._timeout_seconds
        logger.debug(
            "Calling %s model=%s prompt_chars=%d",
            self.kind.value,
            spec.model,
            len(prompt),
        )
        try:
            response = self._client.post(url, headers=headers, json=payload, timeout=timeout)
        except httpx.HTTPError as exc:
            raise error_from_transport(self.kind, exc) from exc

        if not response.is_success:
            raise error_from_response(self.kind, response)

        try:
            body = response.json()
        except ValueError as exc:
            raise BadOutput(
                f"{self.kind.value} returned a non-JSON response body",
                raw=response.text,
                provider=self.kind.value,
            ) from exc
        try:
            return self._parse_response(body, spec)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise BadOutput(
                f"{self.kind.value} returned an unexpected response shape: {exc}",
                raw=response.text,
                provider=self.kind.value,
            ) from exc

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _build_request(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _parse_response(self, body: dict[str, Any], spec: ModelSpec) -> ProviderResponse:
        raise NotImplementedError


def _max_tokens(spec: ModelSpec, options: GenerateOptions) -> int:
    return options.max_tokens or spec.max_tokens


def _temperature(spec: ModelSpec, options: GenerateOptions) -> float:
    return options.temperature if options.temperature is not None else spec.temperature


class OpenAICompatibleProvider(HttpProvider):
    """Chat completions API shared by OpenAI and OpenRouter."""

    def __init__(
        self,
        kind: ProviderKind,
        credentials: ProviderCredentials,
        *,
        base_url: str,
        api_key_field: str,
        extra_headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(credentials, timeout_seconds=timeout_seconds, client=client)
        self.kind = kind
        self._base_url = base_url.rstrip("/")
        self._api_key_field = api_key_field
        self._extra_headers = extra_headers or {}

    def _build_request(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        api_key = getattr(self._credentials, self._api_key_field)
        headers = {"Authorization": f"Bearer {api_key}", **self._extra_headers}
        payload = {
            "model": spec.model,
            "max_tokens": _max_tokens(spec, options),
            "temperature": _temperature(spec, options),
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        return f"{self._base_url}/chat/completions", headers, payload

    def _parse_response(self, body: dict[str, Any], spec: ModelSpec) -> ProviderResponse:
        message = body["choices"][0]["message"]
        usage = body.get("usage") or {}
        return ProviderResponse(
            text=message.get("content") or "",
            model=str(body.get("model") or spec.model),
            tokens_used=usage.get("total_tokens"),
        )


class AnthropicProvider(HttpProvider):
    """Anthropic messages API."""

    kind = ProviderKind.ANTHROPIC

    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(credentials, timeout_seconds=timeout_seconds, client=client)
        self._base_url = base_url.rstrip("/")

    def _build_request(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "x-api-key": str(self._credentials.anthropic_api_key),
            "anthropic-version": ANTHROPIC_API_VERSION,
        }
        payload = {
            "model": spec.model,
            "max_tokens": _max_tokens(spec, options),
            "temperature": _temperature(spec, options),
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        return f"{self._base_url}/messages", headers, payload

    def _parse_response(self, body: dict[str, Any], spec: ModelSpec) -> ProviderResponse:
        text = "".join(
            block.get("text", "") for block in body["content"] if block.get("type") == "text"
        )
        usage = body.get("usage") or {}
        tokens = None
        if usage:
            tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        return ProviderResponse(
            text=text,
            model=str(body.get("model") or spec.model),
            tokens_used=tokens,
        )


class GeminiProvider(HttpProvider):
    """Google Gemini generateContent API."""

    kind = ProviderKind.GOOGLE

    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        base_url: str = GEMINI_BASE_URL,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(credentials, timeout_seconds=timeout_seconds, client=client)
        self._base_url = base_url.rstrip("/")

    def _build_request(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {"x-goog-api-key": str(self._credentials.google_api_key)}
        payload = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": _max_tokens(spec, options),
                "temperature": _temperature(spec, options),
                "responseMimeType": "application/json",
            },
        }
        return f"{self._base_url}/models/{spec.model}:generateContent", headers, payload

    def _parse_response(self, body: dict[str, Any], spec: ModelSpec) -> ProviderResponse:
        parts = body["candidates"][0]["content"]["parts"]
        usage = body.get("usageMetadata") or {}
        return ProviderResponse(
            text="".join(part.get("text", "") for part in parts),
            model=str(body.get("modelVersion") or spec.model),
            tokens_used=usage.get("totalTokenCount"),
        )


class YandexProvider(HttpProvider):
    """Yandex foundation models completion API."""

    kind = ProviderKind.YANDEX

    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        completion_url: str = YANDEX_COMPLETION_URL,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(credentials, timeout_seconds=timeout_seconds, client=client)
        self._completion_url = completion_url

    def _build_request(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        folder_id = str(self._credentials.yandex_folder_id)
        headers = {
            "Authorization": f"Api-Key {self._credentials.yandex_api_key}",
            "x-folder-id": folder_id,
            "x-data-logging-enabled": "false",
        }
        model = spec.model
        if model.endswith("/rc"):
            model = model.removesuffix("/rc") + "/latest"
        payload = {
            "modelUri": f"gpt://{folder_id}/{model}",
            "completionOptions": {
                "stream": False,
                "temperature": _temperature(spec, options),
                "maxTokens": str(_max_tokens(spec, options)),
            },
            "messages": [
                {"role": "system", "text": SYSTEM_PROMPT},
                {"role": "user", "text": prompt},
            ],
        }
        return self._completion_url, headers, payload

    def _parse_response(self, body: dict[str, Any], spec: ModelSpec) -> ProviderResponse:
        result = body["result"]
        usage = result.get("usage") or {}
        total = usage.get("totalTokens")
        return ProviderResponse(
            text=result["alternatives"][0]["message"]["text"],
            model=str(result.get("modelVersion") or spec.model),
            tokens_used=int(total) if total is not None else None,
        )
