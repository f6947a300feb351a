"""Deterministic provider failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from edu_analyzer.providers.catalog import ProviderKind
from edu_analyzer.providers.errors import (
    AuthError,
    ProviderError,
    ProviderTimeout,
    RateLimited,
)

PROVIDER_FAILURE_CLASSIFIER_VERSION = 2
MAX_BODY_EXCERPT_CHARS = 300

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid_api_key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "overloaded",
    "try again later",
)


@dataclass(slots=True)
class HttpFailureClassification:
    """Normalized failure classification result."""

    code: str
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_error(self, message: str, *, provider: str, status_code: int) -> ProviderError:
        """Build the typed exception for this classification."""

        kwargs = {"provider": provider, "status_code": status_code, "reason_code": self.reason_code}
        if self.code == "AUTH":
            return AuthError(message, **kwargs)
        if self.code == "RATE_LIMIT":
            return RateLimited(message, billing=not self.retryable, **kwargs)
        if self.code == "TIMEOUT":
            return ProviderTimeout(message, **kwargs)
        return ProviderError(message, retryable=self.retryable, **kwargs)

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "code": self.code,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_http_failure(
    kind: ProviderKind,
    status_code: int,
    body: str,
) -> HttpFailureClassification:
    """Classify a non-2xx provider response into an error code and retryability.

    Precedence: the provider's status table, billing or quota text, any 5xx
    (retryable even when the body mentions auth or models), then the access,
    model and transient rate-limit text patterns for 4xx responses.
    """

    rule = kind.status_table.get(status_code)
    if rule is not None:
        return HttpFailureClassification(
            code=rule.code,
            retryable=rule.retryable,
            reason_code=f"{kind.value}_{rule.reason}",
            matched_rule="status_table",
            matched_pattern=None,
        )

    haystack = body.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return HttpFailureClassification(
            code="RATE_LIMIT",
            retryable=False,
            reason_code=f"{kind.value}_billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    if status_code >= 500:
        return HttpFailureClassification(
            code="PROVIDER_ERROR",
            retryable=True,
            reason_code=f"{kind.value}_server_error",
            matched_rule="server_error",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return HttpFailureClassification(
            code="AUTH",
            retryable=False,
            reason_code=f"{kind.value}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return HttpFailureClassification(
            code="PROVIDER_ERROR",
            retryable=False,
            reason_code=f"{kind.value}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return HttpFailureClassification(
            code="RATE_LIMIT",
            retryable=True,
            reason_code=f"{kind.value}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    return HttpFailureClassification(
        code="PROVIDER_ERROR",
        retryable=False,
        reason_code=f"{kind.value}_client_error",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def error_from_response(kind: ProviderKind, response: httpx.Response) -> ProviderError:
    body = response.text
    classification = classify_http_failure(kind, response.status_code, body)
    excerpt = " ".join(body.split())[:MAX_BODY_EXCERPT_CHARS]
    message = f"{kind.value} returned HTTP {response.status_code}"
    if excerpt:
        message = f"{message}: {excerpt}"
    return classification.to_error(message, provider=kind.value, status_code=response.status_code)


def error_from_transport(kind: ProviderKind, exc: httpx.HTTPError) -> ProviderError:
    """Timeouts are ``ProviderTimeout``; other transport failures are retryable."""

    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeout(
            f"{kind.value} request timed out",
            provider=kind.value,
            reason_code=f"{kind.value}_timeout",
        )
    return ProviderError(
        f"{kind.value} transport error: {exc}",
        retryable=True,
        provider=kind.value,
        reason_code=f"{kind.value}_transport_error",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
