"""Typed provider failures carrying a stable code and retryability flag."""

from __future__ import annotations


class ProviderError(Exception):
    """Base provider failure; retryable only for server-side (5xx) problems."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        provider: str | None = None,
        status_code: int | None = None,
        reason_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.provider = provider
        self.status_code = status_code
        self.reason_code = reason_code

    def to_event_details(self) -> dict[str, object]:
        return {
            "code": self.code,
            "retryable": self.retryable,
            "provider": self.provider,
            "status_code": self.status_code,
            "reason_code": self.reason_code,
        }


class AuthError(ProviderError):
    """Invalid or missing provider credentials. Never retried."""

    code = "AUTH"

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class RateLimited(ProviderError):
    """Provider throttled the call; billing exhaustion is not retryable."""

    code = "RATE_LIMIT"

    def __init__(self, message: str, *, billing: bool = False, **kwargs: object) -> None:
        kwargs["retryable"] = not billing
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.billing = billing


class ProviderTimeout(ProviderError):
    """Provider call exceeded its deadline."""

    code = "TIMEOUT"

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs["retryable"] = True
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class BadOutput(ProviderError):
    """No in-range score could be recovered from provider output."""

    code = "BAD_OUTPUT"

    def __init__(self, message: str, *, raw: str = "", **kwargs: object) -> None:
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.raw = raw
