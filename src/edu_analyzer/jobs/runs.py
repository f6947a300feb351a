"""Program run lifecycle: creation, pause/resume/stop and status reports."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from edu_analyzer.analysis.hashing import ContentFingerprint
from edu_analyzer.jobs.errors import InvalidRunTransition, RunNotFoundError
from edu_analyzer.jobs.models import RunCreate, RunStatus, RunStatusReport, RunView
from edu_analyzer.jobs.repository import JobQueueRepository
from edu_analyzer.jobs.run_state import can_transition
from edu_analyzer.storage.common import utc_now

logger = logging.getLogger(__name__)

MIN_RUN_CONCURRENCY = 1
MAX_RUN_CONCURRENCY = 10


class RunController:
    """Applies run state machine rules on top of the queue repository."""

    def __init__(
        self,
        repository: JobQueueRepository,
        *,
        recent_errors_limit: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.recent_errors_limit = recent_errors_limit
        self._clock = clock

    def create_run(self, request: RunCreate) -> RunView:
        """Create a run with one job per content ref not yet scored.

        Refs whose stored content already has a successful analysis under the
        same configuration get no job. A run without jobs is completed at once.
        """

        target_id = request.target_id.strip()
        if not target_id:
            raise ValueError("target_id must not be empty")
        if request.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        max_concurrency = min(
            max(request.max_concurrency, MIN_RUN_CONCURRENCY),
            MAX_RUN_CONCURRENCY,
        )

        refs = list(dict.fromkeys(ref.strip() for ref in request.content_refs if ref.strip()))
        pending = [ref for ref in refs if not self._already_scored(ref, request.configuration_id)]
        skipped = len(refs) - len(pending)
        if skipped:
            logger.info(
                "Skipping %d of %d content items already scored for target=%s",
                skipped,
                len(refs),
                target_id,
            )
        return self.repository.create_run(
            target_id=target_id,
            content_refs=pending,
            configuration_id=request.configuration_id,
            max_concurrency=max_concurrency,
            max_attempts=request.max_attempts,
        )

    def pause(self, run_id: str) -> RunView:
        """Stop issuing claims for a running run; in-flight jobs finish."""

        return self._transition(
            run_id,
            RunStatus.PAUSED,
            verb="pause",
            allowed_from=frozenset({RunStatus.RUNNING}),
        )

    def resume(self, run_id: str) -> RunView:
        """Resume a paused run; completes it if its jobs finished meanwhile."""

        return self._transition(
            run_id,
            RunStatus.RUNNING,
            verb="resume",
            allowed_from=frozenset({RunStatus.PAUSED}),
        )

    def stop(self, run_id: str) -> RunView:
        """Stop a run for good and fail its queued jobs."""

        while True:
            run = self._require_run(run_id)
            if not can_transition(run.status, RunStatus.STOPPED):
                raise InvalidRunTransition(run_id, run.status.value, "stop")
            stopped = self.repository.stop_run(run_id=run_id, from_status=run.status)
            if stopped is not None:
                return self._require_run(run_id)

    def status(self, run_id: str) -> RunStatusReport:
        """Latest durable state of a run with its recent job errors."""

        run = self._require_run(run_id)
        counts = self.repository.count_jobs(run_id)
        estimated_ms: int | None = None
        if counts.completed >= 1:
            started_at = run.started_at or run.created_at
            elapsed_ms = max((self._clock() - started_at).total_seconds() * 1000.0, 0.0)
            estimated_ms = int(counts.queued * (elapsed_ms / counts.completed))
        return RunStatusReport(
            run=run,
            counts=counts,
            recent_errors=self.repository.recent_errors(
                run_id=run_id,
                limit=self.recent_errors_limit,
            ),
            estimated_time_remaining_ms=estimated_ms,
        )

    def list_runs(
        self,
        *,
        target_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[RunView]:
        return self.repository.list_runs(target_id=target_id, status=status, limit=limit)

    def _already_scored(self, content_ref: str, configuration_id: str | None) -> bool:
        item = self.repository.get_content_item(content_ref)
        if item is None or item.content_hash is None:
            return False
        fingerprint = ContentFingerprint(
            content_hash=item.content_hash,
            configuration_id=configuration_id,
        )
        return self.repository.content_already_scored(content_ref, fingerprint, configuration_id)

    def _transition(
        self,
        run_id: str,
        target: RunStatus,
        *,
        verb: str,
        allowed_from: frozenset[RunStatus],
    ) -> RunView:
        # A lost compare-and-set means a worker moved the run; re-read and re-check.
        while True:
            run = self._require_run(run_id)
            if run.status not in allowed_from or not can_transition(run.status, target):
                raise InvalidRunTransition(run_id, run.status.value, verb)
            if self.repository.transition_run(
                run_id=run_id,
                from_status=run.status,
                to_status=target,
            ):
                return self._require_run(run_id)

    def _require_run(self, run_id: str) -> RunView:
        run = self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run
