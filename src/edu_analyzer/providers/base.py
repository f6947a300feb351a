"""Provider interface for scoring calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from edu_analyzer.providers.catalog import ModelSpec, ProviderKind

SYSTEM_PROMPT = (
    "You are a JSON API. Always respond with valid JSON only. Never add explanations, "
    "markdown formatting, or any text outside the JSON object."
)


@dataclass(slots=True)
class GenerateOptions:
    """Per-call overrides of the model defaults."""

    max_tokens: int | None = None
    temperature: float | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ProviderResponse:
    """Raw completion returned by a provider."""

    text: str
    model: str
    tokens_used: int | None = None


class AnalysisProvider(Protocol):
    """Protocol implemented by concrete providers."""

    kind: ProviderKind

    def complete(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> ProviderResponse:
        """Send a filled prompt and return the raw completion text."""

    def close(self) -> None:
        """Release transport resources."""
