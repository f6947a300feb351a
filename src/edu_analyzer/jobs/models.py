"""Domain models for the analysis job queue and program runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED})


class RunStatus(str, Enum):
    """Program run lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.STOPPED, RunStatus.COMPLETED, RunStatus.FAILED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.PAUSED})
CLAIMABLE_RUN_STATUSES = (RunStatus.QUEUED, RunStatus.RUNNING)


class JobOutcome(str, Enum):
    """Outcome reported to ``finalize``."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRYABLE_FAILURE = "retryable_failure"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    BILLING_OR_QUOTA = "billing_or_quota"
    TIMEOUT = "timeout"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    BAD_OUTPUT = "bad_output"
    CONTENT_FETCH = "content_fetch"
    CONTENT_FETCH_DENIED = "content_fetch_denied"
    STOPPED = "stopped"
    INTERNAL = "internal"


@dataclass(slots=True)
class JobView:
    """Readable job view for runner and CLI logic."""

    job_id: str
    run_id: str
    content_ref: str
    status: JobStatus
    attempt_count: int
    max_attempts: int
    lock_owner: str | None
    locked_at: datetime | None
    last_error: str | None
    last_failure_class: FailureClass | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    run_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunView:
    """Readable program run view."""

    run_id: str
    owner_id: str
    target_id: str
    status: RunStatus
    configuration_id: str | None
    total_units: int
    queued_count: int
    running_count: int
    succeeded_count: int
    failed_count: int
    skipped_count: int
    max_concurrency: int
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    updated_at: datetime

    @property
    def completed_count(self) -> int:
        return self.succeeded_count + self.failed_count + self.skipped_count


@dataclass(slots=True)
class RunCounts:
    """Per-status job counts recomputed from job rows."""

    queued: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.succeeded + self.failed + self.skipped

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed + self.skipped


@dataclass(slots=True)
class RecentError:
    """One failed or retried job error for run diagnostics."""

    job_id: str
    content_ref: str
    error: str
    failure_class: FailureClass | None
    occurred_at: datetime


@dataclass(slots=True)
class RunStatusReport:
    """Latest known state of a run."""

    run: RunView
    counts: RunCounts
    recent_errors: list[RecentError]
    estimated_time_remaining_ms: int | None = None


@dataclass(slots=True)
class RunCreate:
    """Input payload for creating a program run."""

    target_id: str
    content_refs: list[str]
    configuration_id: str | None = None
    max_concurrency: int = 3
    max_attempts: int = 3


@dataclass(slots=True)
class ContentItemWrite:
    """Upsert payload for one content item."""

    content_ref: str
    title: str | None = None
    source_url: str | None = None
    body: str | None = None


@dataclass(slots=True)
class ContentItemView:
    """Stored content item."""

    content_ref: str
    owner_id: str
    title: str | None
    source_url: str | None
    body: str | None
    content_hash: str | None
    last_fetched_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AnalysisWrite:
    """Result payload recorded once per job (upserted on re-execution)."""

    job_id: str
    run_id: str
    content_ref: str
    content_hash: str
    configuration_id: str | None
    results: dict[str, dict[str, Any]]
    provider: str
    model: str
    duration_ms: int
    tokens_used: int | None = None


@dataclass(slots=True)
class AnalysisView:
    """Stored analysis row."""

    analysis_id: int
    job_id: str
    run_id: str
    content_ref: str
    content_hash: str
    configuration_id: str | None
    results: dict[str, dict[str, Any]]
    provider: str
    model: str
    duration_ms: int
    tokens_used: int | None
    created_at: datetime
    updated_at: datetime
