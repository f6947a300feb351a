"""Closed set of provider identities and the catalog of scoring models."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from edu_analyzer.config import ProviderCredentials

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StatusRule:
    """How one HTTP status maps onto an error code and retryability."""

    code: str
    retryable: bool
    reason: str


_COMMON_STATUS_TABLE: dict[int, StatusRule] = {
    401: StatusRule("AUTH", retryable=False, reason="authentication_failed"),
    403: StatusRule("AUTH", retryable=False, reason="access_denied"),
    408: StatusRule("TIMEOUT", retryable=True, reason="request_timeout"),
    429: StatusRule("RATE_LIMIT", retryable=True, reason="rate_limited"),
}


class ProviderKind(str, Enum):
    """Provider identities; each carries its credential check and status table."""

    OPENROUTER = "openrouter"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    YANDEX = "yandex"
    ECHO = "echo"

    def has_credentials(self, credentials: ProviderCredentials) -> bool:
        return all(getattr(credentials, name) for name in _CREDENTIAL_FIELDS[self])

    @property
    def status_table(self) -> Mapping[int, StatusRule]:
        return _STATUS_TABLES[self]

    @property
    def in_fallback_rotation(self) -> bool:
        return self is not ProviderKind.ECHO


_CREDENTIAL_FIELDS: dict[ProviderKind, tuple[str, ...]] = {
    ProviderKind.OPENROUTER: ("openrouter_api_key",),
    ProviderKind.ANTHROPIC: ("anthropic_api_key",),
    ProviderKind.OPENAI: ("openai_api_key",),
    ProviderKind.GOOGLE: ("google_api_key",),
    ProviderKind.YANDEX: ("yandex_api_key", "yandex_folder_id"),
    ProviderKind.ECHO: (),
}

_STATUS_TABLES: dict[ProviderKind, dict[int, StatusRule]] = {
    ProviderKind.OPENROUTER: {
        **_COMMON_STATUS_TABLE,
        402: StatusRule("RATE_LIMIT", retryable=False, reason="insufficient_credits"),
    },
    ProviderKind.ANTHROPIC: {
        **_COMMON_STATUS_TABLE,
        529: StatusRule("RATE_LIMIT", retryable=True, reason="overloaded"),
    },
    ProviderKind.OPENAI: dict(_COMMON_STATUS_TABLE),
    ProviderKind.GOOGLE: dict(_COMMON_STATUS_TABLE),
    ProviderKind.YANDEX: dict(_COMMON_STATUS_TABLE),
    ProviderKind.ECHO: {},
}


@dataclass(frozen=True, slots=True)
class ModelSpec:
    """One addressable scoring model."""

    model_id: str
    provider: ProviderKind
    model: str
    max_tokens: int = 2_000
    temperature: float = 0.3


DEFAULT_MODEL_ID = "openrouter-gpt4o-mini"

BUILTIN_MODELS: tuple[ModelSpec, ...] = (
    ModelSpec("openrouter-gpt4o-mini", ProviderKind.OPENROUTER, "openai/gpt-4o-mini"),
    ModelSpec("openrouter-claude-haiku", ProviderKind.OPENROUTER, "anthropic/claude-3.5-haiku"),
    ModelSpec("claude-haiku", ProviderKind.ANTHROPIC, "claude-3-5-haiku-latest"),
    ModelSpec("gpt-4o-mini", ProviderKind.OPENAI, "gpt-4o-mini"),
    ModelSpec("gemini-flash", ProviderKind.GOOGLE, "gemini-1.5-flash"),
    ModelSpec("yandex-gpt-pro", ProviderKind.YANDEX, "yandexgpt/latest", temperature=0.2),
    ModelSpec("echo", ProviderKind.ECHO, "echo-v1", temperature=0.0),
)


class ModelCatalog:
    """Ordered model registry; order defines the fallback rotation."""

    def __init__(self, models: tuple[ModelSpec, ...], *, default_model_id: str) -> None:
        if not models:
            raise ValueError("Model catalog must contain at least one model.")
        self._models: dict[str, ModelSpec] = {}
        for spec in models:
            if spec.model_id in self._models:
                raise ValueError(f"Duplicate model id in catalog: {spec.model_id!r}")
            self._models[spec.model_id] = spec
        if default_model_id not in self._models:
            raise ValueError(f"Default model {default_model_id!r} is not in the catalog.")
        self.default_model_id = default_model_id

    @classmethod
    def builtin(cls, *, default_model_id: str = DEFAULT_MODEL_ID) -> ModelCatalog:
        return cls(BUILTIN_MODELS, default_model_id=default_model_id)

    @classmethod
    def from_json_file(cls, path: Path, *, default_model_id: str | None = None) -> ModelCatalog:
        """Load ``{"default": ..., "models": {id: {provider, model, ...}}}``."""

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ValueError(f"Cannot read models catalog {path}: {error}") from error
        if not isinstance(payload, dict) or not isinstance(payload.get("models"), dict):
            raise ValueError(f"Models catalog {path} must contain a 'models' object.")

        models: list[ModelSpec] = []
        for model_id, raw in payload["models"].items():
            if not isinstance(raw, dict):
                raise ValueError(f"Model entry {model_id!r} must be an object.")
            try:
                provider = ProviderKind(str(raw["provider"]))
            except (KeyError, ValueError) as error:
                raise ValueError(
                    f"Model entry {model_id!r} has invalid provider: {raw.get('provider')!r}",
                ) from error
            models.append(
                ModelSpec(
                    model_id=model_id,
                    provider=provider,
                    model=str(raw.get("model") or model_id),
                    max_tokens=int(raw.get("max_tokens", raw.get("maxTokens", 2_000))),
                    temperature=float(raw.get("temperature", 0.3)),
                ),
            )
        if not models:
            raise ValueError(f"Models catalog {path} defines no models.")
        default = default_model_id or str(payload.get("default") or models[0].model_id)
        logger.info("Loaded %d models from %s", len(models), path)
        return cls(tuple(models), default_model_id=default)

    def get(self, model_id: str) -> ModelSpec:
        try:
            return self._models[model_id]
        except KeyError as error:
            raise KeyError(f"Unknown model id: {model_id!r}") from error

    def list_models(self) -> list[ModelSpec]:
        return list(self._models.values())

    def available_models(self, credentials: ProviderCredentials) -> list[ModelSpec]:
        """Models whose provider credentials are configured, in catalog order."""

        return [
            spec
            for spec in self._models.values()
            if spec.provider.has_credentials(credentials)
        ]

    def next_fallback(self, current_model_id: str, credentials: ProviderCredentials) -> str | None:
        """Next model after ``current_model_id`` in the circular list of usable models."""

        rotation = [
            spec.model_id
            for spec in self.available_models(credentials)
            if spec.provider.in_fallback_rotation
        ]
        if current_model_id not in rotation or len(rotation) <= 1:
            return None
        index = rotation.index(current_model_id)
        return rotation[(index + 1) % len(rotation)]
