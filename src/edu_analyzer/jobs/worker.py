"""Tick-based job runner: claim, score and finalize analysis jobs."""

from __future__ import annotations

import logging
import os
import signal
import socket
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from edu_analyzer.analysis.hashing import content_fingerprint
from edu_analyzer.jobs.content import ContentSource
from edu_analyzer.jobs.errors import RunNotFoundError
from edu_analyzer.jobs.models import (
    AnalysisWrite,
    FailureClass,
    JobOutcome,
    JobStatus,
    JobView,
    RunStatus,
)
from edu_analyzer.jobs.progress import ProgressSink, RepositoryProgressSink
from edu_analyzer.jobs.repository import JobQueueRepository
from edu_analyzer.jobs.retry_policy import classify_job_failure
from edu_analyzer.providers.errors import ProviderError
from edu_analyzer.providers.orchestrator import ProviderOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_CEILING = 10
DEFAULT_TICK_DEADLINE_SECONDS = 50.0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass(slots=True)
class TickSummary:
    """Counters of one scheduling tick."""

    released_locks: int = 0
    claimed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    retried: int = 0
    lost: int = 0

    @property
    def processed(self) -> int:
        """Jobs that reached a terminal state or were requeued."""

        return self.succeeded + self.skipped + self.failed + self.retried

    def add(self, other: TickSummary) -> None:
        self.released_locks += other.released_locks
        self.claimed += other.claimed
        self.succeeded += other.succeeded
        self.skipped += other.skipped
        self.failed += other.failed
        self.retried += other.retried
        self.lost += other.lost


@dataclass(slots=True)
class LoopSummary:
    """Aggregate counters of ``run_loop``."""

    ticks: int = 0
    idle_ticks: int = 0
    totals: TickSummary | None = None


@dataclass(slots=True)
class _JobResult:
    outcome: JobOutcome | None
    requeued: bool = False


class JobRunner:
    """Executes claimed jobs concurrently within one tick.

    Ticks are triggered externally (CLI, scheduler, a user asking to speed up a
    run). Any number of runners in any number of processes may tick at once;
    the repository's conditional updates are the only coordination.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobQueueRepository,
        orchestrator: ProviderOrchestrator,
        content_source: ContentSource,
        progress: ProgressSink | None = None,
        worker_id: str | None = None,
        concurrency_ceiling: int = DEFAULT_CONCURRENCY_CEILING,
        tick_deadline_seconds: float = DEFAULT_TICK_DEADLINE_SECONDS,
        idle_poll_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if concurrency_ceiling <= 0:
            raise ValueError("concurrency_ceiling must be > 0")
        self.repository = repository
        self.orchestrator = orchestrator
        self.content_source = content_source
        self.progress = progress or RepositoryProgressSink(repository)
        self.worker_id = worker_id or default_worker_id()
        self.concurrency_ceiling = concurrency_ceiling
        self.tick_deadline_seconds = tick_deadline_seconds
        self.idle_poll_seconds = idle_poll_seconds
        self._clock = clock
        self._stop_requested = False

    def process_tick(self, max_concurrency: int, run_id: str | None = None) -> int:
        """Run one tick and return the number of jobs finalized or requeued."""

        return self.run_tick(max_concurrency, run_id=run_id).processed

    def run_tick(self, max_concurrency: int, *, run_id: str | None = None) -> TickSummary:
        """Sweep stale locks, claim up to the budget and execute the claimed jobs.

        Store failures propagate to the caller; job failures are recorded on
        the job and never abort the tick.
        """

        started = self._clock()
        summary = TickSummary()
        summary.released_locks = self.repository.release_stale_locks()

        jobs: list[JobView] = []
        exhausted: set[str | None] = set()
        for slot_run_id in self.plan_budget(max_concurrency, run_id=run_id):
            if self._clock() - started >= self.tick_deadline_seconds:
                logger.info("Tick deadline reached, stop claiming after %d jobs", len(jobs))
                break
            if self._stop_requested:
                break
            if slot_run_id in exhausted:
                continue
            job = self.repository.claim(worker_id=self.worker_id, run_id=slot_run_id)
            if job is None:
                exhausted.add(slot_run_id)
                continue
            jobs.append(job)
        summary.claimed = len(jobs)
        if not jobs:
            return summary

        with ThreadPoolExecutor(
            max_workers=len(jobs),
            thread_name_prefix="edu-analyzer-job",
        ) as pool:
            futures = [pool.submit(self._execute_job, job) for job in jobs]
            for future in as_completed(futures):
                _record(summary, future.result())

        logger.info(
            "Tick finished: claimed=%d succeeded=%d skipped=%d failed=%d retried=%d lost=%d",
            summary.claimed,
            summary.succeeded,
            summary.skipped,
            summary.failed,
            summary.retried,
            summary.lost,
        )
        return summary

    def plan_budget(self, max_concurrency: int, *, run_id: str | None = None) -> list[str | None]:
        """Claim slots for this tick, one run id per slot.

        Scoped to a run, every slot belongs to it. Globally, the budget is the
        sum of claimable runs' concurrency capped by the ceiling and by
        ``max_concurrency``, handed out round-robin in run creation order.
        """

        budget = min(max(max_concurrency, 0), self.concurrency_ceiling)
        if budget == 0:
            return []
        if run_id is not None:
            run = self.repository.get_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status not in {RunStatus.QUEUED, RunStatus.RUNNING}:
                return []
            return [run_id] * budget

        runs = self.repository.list_claimable_runs()
        budget = min(budget, sum(run.max_concurrency for run in runs))
        remaining = {run.run_id: run.max_concurrency for run in runs}
        slots: list[str | None] = []
        while len(slots) < budget:
            for run in runs:
                if len(slots) >= budget:
                    break
                if remaining[run.run_id] <= 0:
                    continue
                remaining[run.run_id] -= 1
                slots.append(run.run_id)
        return slots

    def run_loop(
        self,
        max_concurrency: int,
        *,
        run_id: str | None = None,
        max_ticks: int | None = None,
        max_idle_ticks: int = 1,
    ) -> LoopSummary:
        """Tick until the queue stays idle for ``max_idle_ticks`` or a stop signal arrives."""

        loop = LoopSummary(totals=TickSummary())
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_ticks is not None and loop.ticks >= max_ticks:
                    break
                tick = self.run_tick(max_concurrency, run_id=run_id)
                loop.ticks += 1
                if loop.totals is not None:
                    loop.totals.add(tick)
                if tick.claimed == 0 and tick.released_locks == 0:
                    loop.idle_ticks += 1
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_ticks:
                        break
                    self._sleep_with_stop(self.idle_poll_seconds)
                    continue
                consecutive_idle = 0
        return loop

    def request_stop(self) -> None:
        self._stop_requested = True

    def _execute_job(self, job: JobView) -> _JobResult:
        self.progress.job_started(job, worker_id=self.worker_id)
        try:
            return self._score_job(job)
        except SQLAlchemyError:
            raise
        except Exception as error:  # noqa: BLE001
            return self._fail_job(job, error)

    def _score_job(self, job: JobView) -> _JobResult:
        run = self.repository.get_run(job.run_id)
        configuration_id = run.configuration_id if run is not None else None

        text = self.content_source.fetch_content(job.content_ref)
        fingerprint = content_fingerprint(text, configuration_id)
        if self.repository.content_already_scored(job.content_ref, fingerprint, configuration_id):
            return self._finish(
                job,
                JobOutcome.SKIPPED,
                details={"reason": "content_unchanged", "content_hash": fingerprint.content_hash},
            )

        results: dict[str, dict[str, object]] = {}
        duration_ms = 0
        tokens_used: int | None = None
        provider_name = ""
        model_name = ""
        for criterion in self.repository.load_criteria(configuration_id):
            result = self.orchestrator.analyze_with_retry(criterion.prompt_template, text)
            results[criterion.name] = result.to_dict()
            duration_ms += result.duration_ms
            if result.tokens_used is not None:
                tokens_used = (tokens_used or 0) + result.tokens_used
            provider_name = result.provider_name
            model_name = result.model_name
            self.progress.criterion_scored(
                job,
                criterion=criterion.name,
                score=result.score,
                model_id=result.model_id,
            )

        self.repository.save_analysis(
            AnalysisWrite(
                job_id=job.job_id,
                run_id=job.run_id,
                content_ref=job.content_ref,
                content_hash=fingerprint.content_hash,
                configuration_id=configuration_id,
                results=results,
                provider=provider_name,
                model=model_name,
                duration_ms=duration_ms,
                tokens_used=tokens_used,
            ),
        )
        return self._finish(
            job,
            JobOutcome.SUCCEEDED,
            details={"criteria": len(results), "model": model_name, "duration_ms": duration_ms},
        )

    def _fail_job(self, job: JobView, error: Exception) -> _JobResult:
        decision = classify_job_failure(error, previous_failure_class=job.last_failure_class)
        details: dict[str, object] = {"reason": decision.reason}
        if isinstance(error, ProviderError):
            details["provider_error"] = error.to_event_details()
        logger.warning(
            "Job %s failed (%s, retryable=%s): %s",
            job.job_id,
            decision.failure_class.value,
            decision.retryable,
            error,
        )
        return self._finish(
            job,
            decision.outcome,
            error=str(error) or type(error).__name__,
            failure_class=decision.failure_class,
            details=details,
        )

    def _finish(
        self,
        job: JobView,
        outcome: JobOutcome,
        *,
        error: str | None = None,
        failure_class: FailureClass | None = None,
        details: dict[str, object] | None = None,
    ) -> _JobResult:
        status = self.repository.finalize(
            job_id=job.job_id,
            worker_id=self.worker_id,
            outcome=outcome,
            error=error,
            failure_class=failure_class,
            details=details,
        )
        if status is None:
            logger.warning("Job %s lock was lost before finalize; outcome dropped", job.job_id)
            return _JobResult(outcome=None)
        self.progress.job_finished(job, outcome=outcome.value, error=error)
        return _JobResult(outcome=outcome, requeued=status is JobStatus.QUEUED)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, finishing current tick", name)
            self._stop_requested = True

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _record(summary: TickSummary, result: _JobResult) -> None:
    if result.outcome is None:
        summary.lost += 1
    elif result.outcome is JobOutcome.SUCCEEDED:
        summary.succeeded += 1
    elif result.outcome is JobOutcome.SKIPPED:
        summary.skipped += 1
    elif result.requeued:
        summary.retried += 1
    else:
        summary.failed += 1
