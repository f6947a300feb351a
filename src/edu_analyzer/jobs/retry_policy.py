"""Job-level failure classification and retry decisions."""

from __future__ import annotations

from dataclasses import dataclass

from edu_analyzer.jobs.errors import ContentFetchError
from edu_analyzer.jobs.models import FailureClass, JobOutcome
from edu_analyzer.providers.errors import (
    AuthError,
    BadOutput,
    ProviderError,
    ProviderTimeout,
    RateLimited,
)


@dataclass(slots=True)
class FailureDecision:
    """Decision returned by job retry policy."""

    failure_class: FailureClass
    retryable: bool
    reason: str

    @property
    def outcome(self) -> JobOutcome:
        return JobOutcome.RETRYABLE_FAILURE if self.retryable else JobOutcome.FAILED


def classify_job_failure(
    error: Exception,
    *,
    previous_failure_class: FailureClass | None,
) -> FailureDecision:
    """Map a job execution error onto a failure class and retryability.

    Unparseable output gets one job-level retry: a second consecutive
    ``BadOutput`` for the same job is fatal.
    """

    if isinstance(error, AuthError):
        return FailureDecision(FailureClass.AUTH, False, "Provider credentials rejected.")
    if isinstance(error, RateLimited):
        if error.billing:
            return FailureDecision(
                FailureClass.BILLING_OR_QUOTA,
                False,
                "Provider billing or quota exhausted.",
            )
        return FailureDecision(FailureClass.RATE_LIMITED, True, "Provider rate limited.")
    if isinstance(error, ProviderTimeout):
        return FailureDecision(FailureClass.TIMEOUT, True, "Provider call timed out.")
    if isinstance(error, BadOutput):
        if previous_failure_class is FailureClass.BAD_OUTPUT:
            return FailureDecision(
                FailureClass.BAD_OUTPUT,
                False,
                "Output was unparseable again after a job retry.",
            )
        return FailureDecision(
            FailureClass.BAD_OUTPUT,
            True,
            "One job retry is allowed for unparseable output.",
        )
    if isinstance(error, ProviderError):
        if error.retryable:
            return FailureDecision(
                FailureClass.PROVIDER_TRANSIENT,
                True,
                "Transient provider failure.",
            )
        return FailureDecision(
            FailureClass.PROVIDER_NON_RETRYABLE,
            False,
            "Provider rejected the request.",
        )
    if isinstance(error, ContentFetchError):
        if error.retryable:
            return FailureDecision(FailureClass.CONTENT_FETCH, True, "Content fetch failed.")
        return FailureDecision(
            FailureClass.CONTENT_FETCH_DENIED,
            False,
            "Content access was denied.",
        )
    return FailureDecision(FailureClass.INTERNAL, True, f"Unexpected {type(error).__name__}.")
