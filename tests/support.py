"""Test doubles shared across test modules."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from edu_analyzer.config import ProviderSettings
from edu_analyzer.jobs.errors import ContentFetchError
from edu_analyzer.providers.base import GenerateOptions, ProviderResponse
from edu_analyzer.providers.catalog import ModelCatalog, ModelSpec, ProviderKind
from edu_analyzer.providers.orchestrator import ProviderOrchestrator
from edu_analyzer.providers.registry import ProviderRegistry


class MutableClock:
    """Datetime clock that tests move forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedProvider:
    """Returns queued replies in order; an exception entry is raised instead."""

    def __init__(self, kind: ProviderKind, replies: list[str | Exception] | None = None) -> None:
        self.kind = kind
        self.replies = list(replies or [])
        self.default_reply: str | Exception = '{"score": 1, "comment": "Looks fine"}'
        self.prompts: list[str] = []
        self.models: list[str] = []

    def complete(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> ProviderResponse:
        self.prompts.append(prompt)
        self.models.append(spec.model_id)
        reply = self.replies.pop(0) if self.replies else self.default_reply
        if isinstance(reply, Exception):
            raise reply
        return ProviderResponse(text=reply, model=spec.model, tokens_used=10)

    def close(self) -> None:
        return None


class DictContentSource:
    """Content source backed by a dict; missing refs fail retryably."""

    def __init__(self, bodies: dict[str, str]) -> None:
        self.bodies = bodies
        self.calls: list[str] = []

    def fetch_content(self, content_ref: str) -> str:
        self.calls.append(content_ref)
        try:
            return self.bodies[content_ref]
        except KeyError as error:
            raise ContentFetchError(f"missing {content_ref}") from error


def build_orchestrator(
    provider: ScriptedProvider,
    *,
    max_retries: int = 3,
    enable_model_switching: bool = False,
) -> ProviderOrchestrator:
    catalog = ModelCatalog(
        (ModelSpec("scripted", provider.kind, "scripted-v1"),),
        default_model_id="scripted",
    )
    return ProviderOrchestrator(
        registry=ProviderRegistry({provider.kind: provider}),
        catalog=catalog,
        settings=ProviderSettings(
            default_model="scripted",
            enable_model_switching=enable_model_switching,
            max_retries=max_retries,
            backoff_base_seconds=0.0,
            backoff_cap_seconds=0.0,
        ),
        sleep=lambda _seconds: None,
    )
