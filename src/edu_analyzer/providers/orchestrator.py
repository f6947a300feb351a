"""Provider-agnostic scoring calls with retry, backoff and model fallback."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from edu_analyzer.analysis.output_parser import parse_provider_output
from edu_analyzer.analysis.prompts import build_prompt
from edu_analyzer.config import ProviderSettings
from edu_analyzer.providers.base import GenerateOptions
from edu_analyzer.providers.catalog import ModelCatalog
from edu_analyzer.providers.errors import BadOutput, ProviderError
from edu_analyzer.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerateResult:
    """Parsed score record plus call metadata."""

    score: int
    comment: str
    evidence: list[str]
    raw: str
    provider_name: str
    model_name: str
    model_id: str
    duration_ms: int
    detail: str | None = None
    suggestions: list[str] | None = None
    tokens_used: int | None = None
    parse_strategy: str = "direct_json"
    attempts: int = 1
    fallback_used: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "score": self.score,
            "comment": self.comment,
            "evidence": list(self.evidence),
            "detail": self.detail,
            "suggestions": list(self.suggestions) if self.suggestions is not None else None,
            "provider": self.provider_name,
            "model": self.model_name,
            "model_id": self.model_id,
            "duration_ms": self.duration_ms,
            "tokens_used": self.tokens_used,
            "parse_strategy": self.parse_strategy,
            "attempts": self.attempts,
            "fallback_used": self.fallback_used,
        }


@dataclass(slots=True)
class RetryPolicy:
    """Attempt budget and exponential backoff between retryable attempts."""

    max_attempts: int = 3
    base_seconds: float = 1.0
    cap_seconds: float = 10.0
    bad_output_resamples: int = 1

    def delay_for(self, attempt: int) -> float:
        """Delay after ``attempt`` (1-based): ``min(base * 2**(attempt-1), cap)``."""

        return min(self.base_seconds * (2 ** max(attempt - 1, 0)), self.cap_seconds)


@dataclass(slots=True)
class _AttemptState:
    attempts: int = 0
    bad_outputs: int = 0


class ProviderOrchestrator:
    """Uniform scoring facade over the registered providers."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        catalog: ModelCatalog,
        settings: ProviderSettings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.catalog = catalog
        self.settings = settings
        self.retry_policy = RetryPolicy(
            max_attempts=settings.max_retries,
            base_seconds=settings.backoff_base_seconds,
            cap_seconds=settings.backoff_cap_seconds,
        )
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        default_model = settings.default_model or catalog.default_model_id
        self.catalog.get(default_model)
        self._active_model_id = default_model

    @property
    def active_model_id(self) -> str:
        with self._lock:
            return self._active_model_id

    def generate(
        self,
        prompt_template: str,
        content: str,
        options: GenerateOptions | None = None,
        *,
        model_id: str | None = None,
    ) -> GenerateResult:
        """Run one provider call and parse its output; no retries."""

        resolved_model_id = model_id or self.active_model_id
        spec = self.catalog.get(resolved_model_id)
        provider = self.registry.get(spec.provider)
        prompt = build_prompt(prompt_template, content)

        started = self._clock()
        response = provider.complete(prompt, spec, options or GenerateOptions())
        duration_ms = int((self._clock() - started) * 1000)
        try:
            parsed = parse_provider_output(response.text)
        except BadOutput as error:
            error.provider = spec.provider.value
            raise

        return GenerateResult(
            score=parsed.score,
            comment=parsed.comment,
            evidence=parsed.evidence,
            detail=parsed.detail,
            suggestions=parsed.suggestions,
            raw=response.text,
            provider_name=spec.provider.value,
            model_name=response.model,
            model_id=spec.model_id,
            duration_ms=duration_ms,
            tokens_used=response.tokens_used,
            parse_strategy=parsed.strategy,
        )

    def analyze_with_retry(
        self,
        prompt_template: str,
        content: str,
        options: GenerateOptions | None = None,
    ) -> GenerateResult:
        """Retry the active model, then try one fallback model if switching is enabled.

        Non-retryable errors abort immediately, except ``BadOutput`` which gets one
        resample. When the fallback model also fails, the original error is raised
        and the active model is restored.
        """

        model_id = self.active_model_id
        state = _AttemptState()
        policy = self.retry_policy
        last_error: ProviderError | None = None

        while state.attempts < policy.max_attempts:
            state.attempts += 1
            try:
                result = self.generate(prompt_template, content, options, model_id=model_id)
            except ProviderError as error:
                last_error = error
                if not self._should_retry(error, state):
                    raise
                logger.warning(
                    "Provider attempt %d/%d failed for model=%s: %s (%s)",
                    state.attempts,
                    policy.max_attempts,
                    model_id,
                    error.code,
                    error.message,
                )
                if state.attempts < policy.max_attempts:
                    self._sleep(policy.delay_for(state.attempts))
                continue
            result.attempts = state.attempts
            return result

        if last_error is None:
            raise RuntimeError("Retry loop finished without attempts.")
        if not self.settings.enable_model_switching:
            raise last_error
        return self._fallback(
            prompt_template,
            content,
            options,
            original_model_id=model_id,
            original_error=last_error,
            attempts=state.attempts,
        )

    def _should_retry(self, error: ProviderError, state: _AttemptState) -> bool:
        if isinstance(error, BadOutput):
            state.bad_outputs += 1
            return state.bad_outputs <= self.retry_policy.bad_output_resamples
        return error.retryable

    def _fallback(  # noqa: PLR0913
        self,
        prompt_template: str,
        content: str,
        options: GenerateOptions | None,
        *,
        original_model_id: str,
        original_error: ProviderError,
        attempts: int,
    ) -> GenerateResult:
        fallback_model_id = self.catalog.next_fallback(
            original_model_id,
            self.settings.credentials,
        )
        if fallback_model_id is None:
            raise original_error

        logger.warning(
            "Retries exhausted for model=%s, switching to fallback model=%s",
            original_model_id,
            fallback_model_id,
        )
        with self._lock:
            self._active_model_id = fallback_model_id
        try:
            result = self.generate(prompt_template, content, options, model_id=fallback_model_id)
        except ProviderError as fallback_error:
            logger.warning(
                "Fallback model=%s failed (%s), reverting to model=%s",
                fallback_model_id,
                fallback_error.code,
                original_model_id,
            )
            with self._lock:
                self._active_model_id = original_model_id
            raise original_error from fallback_error
        except BaseException:
            with self._lock:
                self._active_model_id = original_model_id
            raise
        result.attempts = attempts + 1
        result.fallback_used = True
        return result
