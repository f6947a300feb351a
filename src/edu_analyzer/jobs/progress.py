"""Progress sinks notified by the job runner."""

from __future__ import annotations

import logging
from typing import Protocol

from edu_analyzer.jobs.models import JobView
from edu_analyzer.jobs.repository import JobQueueRepository

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Receives per-job progress while a job executes."""

    def job_started(self, job: JobView, *, worker_id: str) -> None:
        """Job was claimed and execution began."""

    def criterion_scored(
        self,
        job: JobView,
        *,
        criterion: str,
        score: int,
        model_id: str,
    ) -> None:
        """One criterion received a score."""

    def job_finished(self, job: JobView, *, outcome: str, error: str | None) -> None:
        """Job was finalized with ``outcome``."""


class RepositoryProgressSink:
    """Writes progress into the durable job event table."""

    def __init__(self, repository: JobQueueRepository) -> None:
        self.repository = repository

    def job_started(self, job: JobView, *, worker_id: str) -> None:
        self.repository.record_job_event(
            job_id=job.job_id,
            run_id=job.run_id,
            event_type="execution_started",
            details={"worker_id": worker_id, "attempt_count": job.attempt_count},
        )

    def criterion_scored(
        self,
        job: JobView,
        *,
        criterion: str,
        score: int,
        model_id: str,
    ) -> None:
        self.repository.record_job_event(
            job_id=job.job_id,
            run_id=job.run_id,
            event_type="criterion_scored",
            details={"criterion": criterion, "score": score, "model_id": model_id},
        )

    def job_finished(self, job: JobView, *, outcome: str, error: str | None) -> None:
        # finalize already records the transition event
        return None


class LoggingProgressSink:
    """Logs progress lines; used by the CLI worker commands."""

    def job_started(self, job: JobView, *, worker_id: str) -> None:
        logger.info("Job %s started (content=%s worker=%s)", job.job_id, job.content_ref, worker_id)

    def criterion_scored(
        self,
        job: JobView,
        *,
        criterion: str,
        score: int,
        model_id: str,
    ) -> None:
        logger.info("Job %s %s=%+d via %s", job.job_id, criterion, score, model_id)

    def job_finished(self, job: JobView, *, outcome: str, error: str | None) -> None:
        if error:
            logger.info("Job %s finished: %s (%s)", job.job_id, outcome, error)
        else:
            logger.info("Job %s finished: %s", job.job_id, outcome)


class CompositeProgressSink:
    """Fans progress out to several sinks."""

    def __init__(self, *sinks: ProgressSink) -> None:
        self.sinks = sinks

    def job_started(self, job: JobView, *, worker_id: str) -> None:
        for sink in self.sinks:
            sink.job_started(job, worker_id=worker_id)

    def criterion_scored(
        self,
        job: JobView,
        *,
        criterion: str,
        score: int,
        model_id: str,
    ) -> None:
        for sink in self.sinks:
            sink.criterion_scored(job, criterion=criterion, score=score, model_id=model_id)

    def job_finished(self, job: JobView, *, outcome: str, error: str | None) -> None:
        for sink in self.sinks:
            sink.job_finished(job, outcome=outcome, error=error)
