"""Persistent queue repository for analysis jobs and program runs."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from edu_analyzer.analysis.hashing import ContentFingerprint, content_hash
from edu_analyzer.analysis.prompts import DEFAULT_CRITERIA, Criterion
from edu_analyzer.jobs.errors import (
    ActiveRunExistsError,
    InvalidRunTransition,
    RunNotFoundError,
    StoreConflict,
)
from edu_analyzer.jobs.models import (
    CLAIMABLE_RUN_STATUSES,
    AnalysisView,
    AnalysisWrite,
    ContentItemView,
    ContentItemWrite,
    FailureClass,
    JobEventView,
    JobOutcome,
    JobStatus,
    JobView,
    RecentError,
    RunCounts,
    RunStatus,
    RunView,
)
from edu_analyzer.jobs.run_state import STOPPED_BY_USER_ERROR, completion_status
from edu_analyzer.storage.alembic_runner import upgrade_head
from edu_analyzer.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from edu_analyzer.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    Analysis,
    AnalysisJob,
    AnalysisJobEvent,
    AppUser,
    ContentItem,
    ProgramRun,
    ScoringCriterion,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 90
MAX_ERROR_CHARS = 2_000

_OUTCOME_TARGETS: dict[JobOutcome, JobStatus] = {
    JobOutcome.SUCCEEDED: JobStatus.SUCCEEDED,
    JobOutcome.SKIPPED: JobStatus.SKIPPED,
    JobOutcome.FAILED: JobStatus.FAILED,
}


class JobQueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state change is a conditional ``UPDATE ... WHERE <expected state>``;
    the affected row count decides who won. Workers in other processes need no
    coordination beyond the database.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be > 0")
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        self._ensure_actor_context()

    def _ensure_actor_context(self) -> None:
        with Session(self.engine) as session:
            user = session.exec(
                select(AppUser).where(AppUser.user_id == self.user_id),
            ).one_or_none()
            if user is not None:
                return
            session.add(
                AppUser(
                    user_id=self.user_id,
                    display_name=self.user_name,
                    created_at=to_db_datetime(self._clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    # Content items

    def upsert_content_item(self, item: ContentItemWrite) -> ContentItemView:
        """Create or update a content item; a new body refreshes its hash."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentItem).where(ContentItem.content_ref == item.content_ref),
            ).one_or_none()
            if row is None:
                row = ContentItem(
                    content_ref=item.content_ref,
                    owner_id=self.user_id,
                    created_at=now,
                    updated_at=now,
                )
            if item.title is not None:
                row.title = item.title
            if item.source_url is not None:
                row.source_url = item.source_url
            if item.body is not None:
                row.body = item.body
                row.content_hash = content_hash(item.body)
                row.last_fetched_at = now
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_content_view(row)

    def get_content_item(self, content_ref: str) -> ContentItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentItem).where(ContentItem.content_ref == content_ref),
            ).one_or_none()
        return _to_content_view(row) if row is not None else None

    def record_fetched_content(self, *, content_ref: str, body: str) -> str:
        """Store freshly fetched text and return its content hash."""

        digest = content_hash(body)
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            session.exec(
                sa_update(ContentItem)
                .where(col(ContentItem.content_ref) == content_ref)
                .values(
                    body=body,
                    content_hash=digest,
                    last_fetched_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return digest

    # Scoring criteria

    def set_criteria(self, *, configuration_id: str, criteria: Iterable[Criterion]) -> int:
        """Replace the active criteria of a configuration; returns active count."""

        now = to_db_datetime(self._clock())
        wanted = {criterion.name: criterion for criterion in criteria}
        if not wanted:
            raise ValueError("At least one criterion is required.")
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScoringCriterion).where(
                    ScoringCriterion.configuration_id == configuration_id,
                ),
            ).all()
            existing = {row.name: row for row in rows}
            for name, row in existing.items():
                if name not in wanted and row.is_active:
                    row.is_active = False
                    row.updated_at = now
                    session.add(row)
            for name, criterion in wanted.items():
                row = existing.get(name)
                if row is None:
                    row = ScoringCriterion(
                        configuration_id=configuration_id,
                        name=name,
                        prompt_template=criterion.prompt_template,
                        created_at=now,
                        updated_at=now,
                    )
                row.prompt_template = criterion.prompt_template
                row.display_order = criterion.display_order
                row.is_active = True
                row.updated_at = now
                session.add(row)
            session.commit()
        return len(wanted)

    def load_criteria(self, configuration_id: str | None) -> list[Criterion]:
        """Active criteria of a configuration; built-in defaults when it has none."""

        if configuration_id is None:
            return list(DEFAULT_CRITERIA)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScoringCriterion)
                .where(
                    ScoringCriterion.configuration_id == configuration_id,
                    col(ScoringCriterion.is_active).is_(True),
                )
                .order_by(
                    col(ScoringCriterion.display_order).asc(),
                    col(ScoringCriterion.name).asc(),
                ),
            ).all()
        if not rows:
            return list(DEFAULT_CRITERIA)
        return [
            Criterion(
                name=row.name,
                prompt_template=row.prompt_template,
                display_order=row.display_order,
            )
            for row in rows
        ]

    # Runs

    def create_run(  # noqa: PLR0913
        self,
        *,
        target_id: str,
        content_refs: list[str],
        configuration_id: str | None,
        max_concurrency: int,
        max_attempts: int,
    ) -> RunView:
        """Insert a run and one queued job per content ref in a single transaction.

        A run with no jobs is created already ``completed``.
        """

        now = self._clock()
        run_id = str(uuid4())
        status = RunStatus.QUEUED if content_refs else RunStatus.COMPLETED
        with Session(self.engine) as session:
            session.add(
                ProgramRun(
                    run_id=run_id,
                    owner_id=self.user_id,
                    target_id=target_id,
                    status=status.value,
                    configuration_id=configuration_id,
                    total_units=len(content_refs),
                    queued_count=len(content_refs),
                    max_concurrency=max_concurrency,
                    created_at=to_db_datetime(now),
                    finished_at=None if content_refs else to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise ActiveRunExistsError(self.user_id, target_id) from error

            for index, content_ref in enumerate(content_refs):
                job_id = str(uuid4())
                # Microsecond offsets keep claim order equal to request order.
                created_at = to_db_datetime(now + timedelta(microseconds=index))
                session.add(
                    AnalysisJob(
                        job_id=job_id,
                        run_id=run_id,
                        content_ref=content_ref,
                        status=JobStatus.QUEUED.value,
                        attempt_count=0,
                        max_attempts=max_attempts,
                        created_at=created_at,
                        updated_at=created_at,
                    ),
                )
                self._add_event(
                    session=session,
                    job_id=job_id,
                    run_id=run_id,
                    event_type="enqueued",
                    status_from=None,
                    status_to=JobStatus.QUEUED,
                    details={"content_ref": content_ref, "max_attempts": max_attempts},
                )
            session.commit()

        logger.info(
            "Created run %s target=%s jobs=%d status=%s",
            run_id,
            target_id,
            len(content_refs),
            status.value,
        )
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def enqueue_jobs(self, *, run_id: str, content_refs: list[str], max_attempts: int) -> int:
        """Append queued jobs to a run that has not finished yet."""

        if not content_refs:
            return 0
        now = self._clock()
        with Session(self.engine) as session:
            run = session.exec(select(ProgramRun).where(ProgramRun.run_id == run_id)).one_or_none()
            if run is None:
                raise RunNotFoundError(run_id)
            if RunStatus(run.status).is_terminal:
                raise InvalidRunTransition(run_id, run.status, "enqueue jobs into")
            for index, content_ref in enumerate(content_refs):
                job_id = str(uuid4())
                created_at = to_db_datetime(now + timedelta(microseconds=index))
                session.add(
                    AnalysisJob(
                        job_id=job_id,
                        run_id=run_id,
                        content_ref=content_ref,
                        status=JobStatus.QUEUED.value,
                        attempt_count=0,
                        max_attempts=max_attempts,
                        created_at=created_at,
                        updated_at=created_at,
                    ),
                )
                self._add_event(
                    session=session,
                    job_id=job_id,
                    run_id=run_id,
                    event_type="enqueued",
                    status_from=None,
                    status_to=JobStatus.QUEUED,
                    details={"content_ref": content_ref, "max_attempts": max_attempts},
                )
            result = session.exec(
                sa_update(ProgramRun)
                .where(
                    col(ProgramRun.run_id) == run_id,
                    col(ProgramRun.status) == run.status,
                )
                .values(total_units=col(ProgramRun.total_units) + len(content_refs))
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StoreConflict(f"Run {run_id} changed status while enqueueing jobs")
            self._recompute_run(session=session, run_id=run_id, now=to_db_datetime(now))
            session.commit()
        return len(content_refs)

    def get_run(self, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(select(ProgramRun).where(ProgramRun.run_id == run_id)).one_or_none()
        return _to_run_view(row) if row is not None else None

    def list_runs(
        self,
        *,
        target_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[RunView]:
        """List the owner's recent runs, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(ProgramRun)
                .where(ProgramRun.owner_id == self.user_id)
                .order_by(col(ProgramRun.created_at).desc())
                .limit(limit)
            )
            if target_id is not None:
                statement = statement.where(ProgramRun.target_id == target_id)
            if status is not None:
                statement = statement.where(ProgramRun.status == status.value)
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def list_claimable_runs(self) -> list[RunView]:
        """Queued or running runs of every owner, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ProgramRun)
                .where(
                    col(ProgramRun.status).in_(
                        [status.value for status in CLAIMABLE_RUN_STATUSES],
                    ),
                )
                .order_by(col(ProgramRun.created_at).asc()),
            ).all()
        return [_to_run_view(row) for row in rows]

    def transition_run(
        self,
        *,
        run_id: str,
        from_status: RunStatus,
        to_status: RunStatus,
    ) -> bool:
        """Compare-and-set the run status; re-evaluates completion on entering running."""

        now = to_db_datetime(self._clock())
        values: dict[str, object] = {"status": to_status.value, "updated_at": now}
        if to_status.is_terminal:
            values["finished_at"] = now
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProgramRun)
                .where(
                    col(ProgramRun.run_id) == run_id,
                    col(ProgramRun.status) == from_status.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._recompute_run(session=session, run_id=run_id, now=now)
            session.commit()
        logger.info("Run %s: %s -> %s", run_id, from_status.value, to_status.value)
        return True

    def stop_run(self, *, run_id: str, from_status: RunStatus) -> int | None:
        """Stop a run and fail its queued jobs; ``None`` when the status changed under us."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProgramRun)
                .where(
                    col(ProgramRun.run_id) == run_id,
                    col(ProgramRun.status) == from_status.value,
                )
                .values(status=RunStatus.STOPPED.value, finished_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            queued_ids = session.exec(
                select(AnalysisJob.job_id).where(
                    AnalysisJob.run_id == run_id,
                    AnalysisJob.status == JobStatus.QUEUED.value,
                ),
            ).all()
            stopped = 0
            for job_id in queued_ids:
                job_result = session.exec(
                    sa_update(AnalysisJob)
                    .where(
                        col(AnalysisJob.job_id) == job_id,
                        col(AnalysisJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        last_error=STOPPED_BY_USER_ERROR,
                        last_failure_class=FailureClass.STOPPED.value,
                        finished_at=now,
                        updated_at=now,
                    ),
                )
                if job_result.rowcount != 1:
                    continue
                stopped += 1
                self._add_event(
                    session=session,
                    job_id=job_id,
                    run_id=run_id,
                    event_type="stopped",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.FAILED,
                    details={"reason": STOPPED_BY_USER_ERROR},
                )
            self._recompute_run(session=session, run_id=run_id, now=now)
            session.commit()
        logger.info("Run %s stopped; %d queued jobs failed", run_id, stopped)
        return stopped

    def count_jobs(self, run_id: str) -> RunCounts:
        with Session(self.engine) as session:
            return self._count_jobs(session=session, run_id=run_id)

    def recent_errors(self, *, run_id: str, limit: int = 5) -> list[RecentError]:
        """Most recent job errors of a run, newest first."""

        if limit <= 0:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisJob)
                .where(
                    AnalysisJob.run_id == run_id,
                    col(AnalysisJob.last_error).is_not(None),
                )
                .order_by(col(AnalysisJob.updated_at).desc())
                .limit(limit),
            ).all()
        return [
            RecentError(
                job_id=row.job_id,
                content_ref=row.content_ref,
                error=row.last_error or "",
                failure_class=(
                    FailureClass(row.last_failure_class)
                    if row.last_failure_class is not None
                    else None
                ),
                occurred_at=to_utc_aware_datetime(row.updated_at),
            )
            for row in rows
        ]

    # Jobs

    def claim(self, *, worker_id: str, run_id: str | None = None) -> JobView | None:
        """Atomically claim the oldest eligible job of a claimable run.

        Eligible means queued, or running with a lock older than the TTL (the
        previous worker crashed). The first claim of a queued run starts it.
        """

        while True:
            now = self._clock()
            now_db = to_db_datetime(now)
            cutoff_db = to_db_datetime(now - self.lock_ttl)
            with Session(self.engine) as session:
                statement = (
                    select(AnalysisJob)
                    .join(ProgramRun, col(ProgramRun.run_id) == col(AnalysisJob.run_id))
                    .where(
                        col(ProgramRun.status).in_(_claimable_run_values()),
                        _eligible_job_predicate(cutoff_db),
                    )
                    .order_by(col(AnalysisJob.created_at).asc(), col(AnalysisJob.job_id).asc())
                    .limit(1)
                )
                if run_id is not None:
                    statement = statement.where(AnalysisJob.run_id == run_id)
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                previous_status = JobStatus(candidate.status)
                previous_owner = candidate.lock_owner
                result = session.exec(
                    sa_update(AnalysisJob)
                    .where(
                        col(AnalysisJob.job_id) == candidate.job_id,
                        _eligible_job_predicate(cutoff_db),
                        col(AnalysisJob.run_id).in_(
                            sa_select(ProgramRun.run_id).where(
                                col(ProgramRun.status).in_(_claimable_run_values()),
                            ),
                        ),
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        lock_owner=worker_id,
                        locked_at=now_db,
                        updated_at=now_db,
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    job_id=candidate.job_id,
                    run_id=candidate.run_id,
                    event_type="claimed" if previous_status is JobStatus.QUEUED else "reclaimed",
                    status_from=previous_status,
                    status_to=JobStatus.RUNNING,
                    details={
                        "worker_id": worker_id,
                        "attempt_count": candidate.attempt_count,
                        **({"previous_owner": previous_owner} if previous_owner else {}),
                    },
                )
                session.exec(
                    sa_update(ProgramRun)
                    .where(
                        col(ProgramRun.run_id) == candidate.run_id,
                        col(ProgramRun.status) == RunStatus.QUEUED.value,
                    )
                    .values(status=RunStatus.RUNNING.value, started_at=now_db, updated_at=now_db),
                )
                self._recompute_run(session=session, run_id=candidate.run_id, now=now_db)
                session.commit()

                claimed = session.exec(
                    select(AnalysisJob).where(AnalysisJob.job_id == candidate.job_id),
                ).one()
                if previous_status is JobStatus.RUNNING:
                    logger.warning(
                        "Reclaimed job %s with expired lock from worker %s",
                        claimed.job_id,
                        previous_owner,
                    )
                return _to_job_view(claimed)

    def finalize(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        outcome: JobOutcome,
        error: str | None = None,
        failure_class: FailureClass | None = None,
        details: dict[str, object] | None = None,
    ) -> JobStatus | None:
        """Record the outcome of a claimed job and recompute its run.

        Terminal outcomes clear the lock. A retryable failure increments
        ``attempt_count`` and requeues the job while attempts remain, otherwise
        it fails the job. A job of a run that is already terminal is never
        requeued: it fails with ``FailureClass.STOPPED``.

        Returns the job's new status, or ``None`` when the worker no longer holds
        the lock (the job was reclaimed or the state changed concurrently).
        """

        now_db = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisJob).where(
                    AnalysisJob.job_id == job_id,
                    AnalysisJob.status == JobStatus.RUNNING.value,
                    AnalysisJob.lock_owner == worker_id,
                ),
            ).one_or_none()
            if row is None:
                return None

            attempt_count = row.attempt_count
            if outcome in {JobOutcome.FAILED, JobOutcome.RETRYABLE_FAILURE}:
                attempt_count += 1
            if outcome is JobOutcome.RETRYABLE_FAILURE:
                target = JobStatus.QUEUED if attempt_count < row.max_attempts else JobStatus.FAILED
            else:
                target = _OUTCOME_TARGETS[outcome]
            if target is JobStatus.QUEUED:
                run = session.get(ProgramRun, row.run_id)
                if run is not None and RunStatus(run.status).is_terminal:
                    # a terminal run never claims again
                    target = JobStatus.FAILED
                    failure_class = FailureClass.STOPPED
                    error = error or STOPPED_BY_USER_ERROR

            error_text = error[:MAX_ERROR_CHARS] if error is not None else None
            values: dict[str, object] = {
                "status": target.value,
                "attempt_count": attempt_count,
                "lock_owner": None,
                "locked_at": None,
                "finished_at": now_db if target.is_terminal else None,
                "updated_at": now_db,
            }
            if outcome is not JobOutcome.SUCCEEDED and outcome is not JobOutcome.SKIPPED:
                values["last_error"] = error_text
                values["last_failure_class"] = (
                    failure_class.value if failure_class is not None else None
                )

            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.job_id) == job_id,
                    col(AnalysisJob.status) == JobStatus.RUNNING.value,
                    col(AnalysisJob.lock_owner) == worker_id,
                    col(AnalysisJob.attempt_count) == row.attempt_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            event_details: dict[str, object] = {
                "worker_id": worker_id,
                "outcome": outcome.value,
                "attempt_count": attempt_count,
                "max_attempts": row.max_attempts,
            }
            if failure_class is not None:
                event_details["failure_class"] = failure_class.value
            if error_text is not None:
                event_details["error"] = error_text
            if details:
                event_details.update(details)
            self._add_event(
                session=session,
                job_id=job_id,
                run_id=row.run_id,
                event_type="retry_scheduled" if target is JobStatus.QUEUED else target.value,
                status_from=JobStatus.RUNNING,
                status_to=target,
                details=event_details,
            )
            self._recompute_run(session=session, run_id=row.run_id, now=now_db)
            session.commit()
        return target

    def release_stale_locks(self) -> int:
        """Requeue running jobs whose lock expired; ``attempt_count`` is untouched.

        Jobs of a run that reached a terminal status meanwhile are failed instead.
        """

        now = self._clock()
        now_db = to_db_datetime(now)
        cutoff_db = to_db_datetime(now - self.lock_ttl)
        released = 0
        with Session(self.engine) as session:
            stale = session.exec(
                select(AnalysisJob, ProgramRun.status)
                .join(ProgramRun, col(ProgramRun.run_id) == col(AnalysisJob.run_id))
                .where(
                    AnalysisJob.status == JobStatus.RUNNING.value,
                    col(AnalysisJob.locked_at) < cutoff_db,
                ),
            ).all()

            touched_runs: set[str] = set()
            for job, run_status in stale:
                run_stopped = RunStatus(run_status).is_terminal
                target = JobStatus.FAILED if run_stopped else JobStatus.QUEUED
                values: dict[str, object] = {
                    "status": target.value,
                    "lock_owner": None,
                    "locked_at": None,
                    "updated_at": now_db,
                }
                if run_stopped:
                    values.update(
                        last_error=STOPPED_BY_USER_ERROR,
                        last_failure_class=FailureClass.STOPPED.value,
                        finished_at=now_db,
                    )
                result = session.exec(
                    sa_update(AnalysisJob)
                    .where(
                        col(AnalysisJob.job_id) == job.job_id,
                        col(AnalysisJob.status) == JobStatus.RUNNING.value,
                        col(AnalysisJob.locked_at) < cutoff_db,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue
                released += 1
                touched_runs.add(job.run_id)
                self._add_event(
                    session=session,
                    job_id=job.job_id,
                    run_id=job.run_id,
                    event_type="lock_expired",
                    status_from=JobStatus.RUNNING,
                    status_to=target,
                    details={"previous_owner": job.lock_owner},
                )
            for run_id in touched_runs:
                self._recompute_run(session=session, run_id=run_id, now=now_db)
            session.commit()

        if released:
            logger.warning("Released %d jobs with expired locks", released)
        return released

    def content_already_scored(
        self,
        content_ref: str,
        fingerprint: ContentFingerprint,
        configuration_id: str | None = None,
    ) -> bool:
        """True if a succeeded job already recorded an analysis for this exact fingerprint."""

        configuration = (
            configuration_id if configuration_id is not None else fingerprint.configuration_id
        )
        with Session(self.engine) as session:
            match = session.exec(
                select(Analysis.id)
                .join(AnalysisJob, col(AnalysisJob.job_id) == col(Analysis.job_id))
                .where(
                    Analysis.content_ref == content_ref,
                    Analysis.content_hash == fingerprint.content_hash,
                    _configuration_predicate(configuration),
                    AnalysisJob.status == JobStatus.SUCCEEDED.value,
                )
                .limit(1),
            ).first()
        return match is not None

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisJob).where(AnalysisJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        run_id: str,
        status: JobStatus | None = None,
    ) -> list[JobView]:
        """List jobs of a run in claim order."""

        with Session(self.engine) as session:
            statement = (
                select(AnalysisJob)
                .where(AnalysisJob.run_id == run_id)
                .order_by(col(AnalysisJob.created_at).asc(), col(AnalysisJob.job_id).asc())
            )
            if status is not None:
                statement = statement.where(AnalysisJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_job_events(
        self,
        *,
        job_id: str | None = None,
        run_id: str | None = None,
        limit: int = 200,
    ) -> list[JobEventView]:
        """Audit trail of one job or a whole run, oldest first."""

        if job_id is None and run_id is None:
            raise ValueError("job_id or run_id is required")
        with Session(self.engine) as session:
            statement = (
                select(AnalysisJobEvent)
                .order_by(col(AnalysisJobEvent.created_at).asc(), col(AnalysisJobEvent.id).asc())
                .limit(limit)
            )
            if job_id is not None:
                statement = statement.where(AnalysisJobEvent.job_id == job_id)
            if run_id is not None:
                statement = statement.where(AnalysisJobEvent.run_id == run_id)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def record_job_event(
        self,
        *,
        job_id: str,
        run_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append a progress event that does not change job status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                run_id=run_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    # Analyses

    def save_analysis(self, payload: AnalysisWrite) -> AnalysisView:
        """Upsert the analysis of a job; re-execution overwrites the previous result."""

        now = to_db_datetime(self._clock())
        results_json = json.dumps(payload.results, ensure_ascii=False, sort_keys=True)
        for _ in range(2):
            with Session(self.engine) as session:
                row = session.exec(
                    select(Analysis).where(Analysis.job_id == payload.job_id),
                ).one_or_none()
                if row is None:
                    row = Analysis(
                        job_id=payload.job_id,
                        run_id=payload.run_id,
                        content_ref=payload.content_ref,
                        content_hash=payload.content_hash,
                        results_json=results_json,
                        provider=payload.provider,
                        model=payload.model,
                        created_at=now,
                        updated_at=now,
                    )
                row.content_hash = payload.content_hash
                row.configuration_id = payload.configuration_id
                row.results_json = results_json
                row.provider = payload.provider
                row.model = payload.model
                row.duration_ms = payload.duration_ms
                row.tokens_used = payload.tokens_used
                row.updated_at = now
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_analysis_view(row)
        raise RuntimeError(f"Could not save analysis for job {payload.job_id}")

    def latest_analysis(
        self,
        content_ref: str,
        configuration_id: str | None = None,
    ) -> AnalysisView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Analysis)
                .where(
                    Analysis.content_ref == content_ref,
                    _configuration_predicate(configuration_id),
                )
                .order_by(col(Analysis.updated_at).desc())
                .limit(1),
            ).first()
        return _to_analysis_view(row) if row is not None else None

    def get_analysis_for_job(self, job_id: str) -> AnalysisView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Analysis).where(Analysis.job_id == job_id)).one_or_none()
        return _to_analysis_view(row) if row is not None else None

    # Internals

    def _count_jobs(self, *, session: Session, run_id: str) -> RunCounts:
        rows = session.exec(
            select(AnalysisJob.status, func.count())
            .where(AnalysisJob.run_id == run_id)
            .group_by(AnalysisJob.status),
        ).all()
        counts = RunCounts()
        for status, count in rows:
            setattr(counts, JobStatus(status).value, int(count))
        return counts

    def _recompute_run(self, *, session: Session, run_id: str, now: datetime) -> None:
        """Rewrite run counters from job rows; finish a running run with no work left."""

        counts = self._count_jobs(session=session, run_id=run_id)
        session.exec(
            sa_update(ProgramRun)
            .where(col(ProgramRun.run_id) == run_id)
            .values(
                queued_count=counts.queued,
                running_count=counts.running,
                succeeded_count=counts.succeeded,
                failed_count=counts.failed,
                skipped_count=counts.skipped,
                updated_at=now,
            ),
        )
        final_status = completion_status(counts)
        if final_status is None:
            return
        result = session.exec(
            sa_update(ProgramRun)
            .where(
                col(ProgramRun.run_id) == run_id,
                col(ProgramRun.status) == RunStatus.RUNNING.value,
            )
            .values(status=final_status.value, finished_at=now, updated_at=now),
        )
        if result.rowcount == 1:
            logger.info(
                "Run %s finished as %s (succeeded=%d failed=%d skipped=%d)",
                run_id,
                final_status.value,
                counts.succeeded,
                counts.failed,
                counts.skipped,
            )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        run_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AnalysisJobEvent(
                job_id=job_id,
                run_id=run_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _claimable_run_values() -> list[str]:
    return [status.value for status in CLAIMABLE_RUN_STATUSES]


def _eligible_job_predicate(cutoff_db: datetime) -> ColumnElement[bool]:
    return or_(
        col(AnalysisJob.status) == JobStatus.QUEUED.value,
        and_(
            col(AnalysisJob.status) == JobStatus.RUNNING.value,
            col(AnalysisJob.locked_at) < cutoff_db,
        ),
    )


def _configuration_predicate(configuration_id: str | None) -> ColumnElement[bool]:
    if configuration_id is None:
        return col(Analysis.configuration_id).is_(None)
    return col(Analysis.configuration_id) == configuration_id


def _to_job_view(row: AnalysisJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        run_id=row.run_id,
        content_ref=row.content_ref,
        status=JobStatus(row.status),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        lock_owner=row.lock_owner,
        locked_at=optional_utc(row.locked_at),
        last_error=row.last_error,
        last_failure_class=(
            FailureClass(row.last_failure_class) if row.last_failure_class is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_run_view(row: ProgramRun) -> RunView:
    return RunView(
        run_id=row.run_id,
        owner_id=row.owner_id,
        target_id=row.target_id,
        status=RunStatus(row.status),
        configuration_id=row.configuration_id,
        total_units=row.total_units,
        queued_count=row.queued_count,
        running_count=row.running_count,
        succeeded_count=row.succeeded_count,
        failed_count=row.failed_count,
        skipped_count=row.skipped_count,
        max_concurrency=row.max_concurrency,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_content_view(row: ContentItem) -> ContentItemView:
    return ContentItemView(
        content_ref=row.content_ref,
        owner_id=row.owner_id,
        title=row.title,
        source_url=row.source_url,
        body=row.body,
        content_hash=row.content_hash,
        last_fetched_at=optional_utc(row.last_fetched_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: AnalysisJobEvent) -> JobEventView:
    details: dict[str, object] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        run_id=row.run_id,
        event_type=row.event_type,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )


def _to_analysis_view(row: Analysis) -> AnalysisView:
    parsed = json.loads(row.results_json) if row.results_json else {}
    return AnalysisView(
        analysis_id=row.id or 0,
        job_id=row.job_id,
        run_id=row.run_id,
        content_ref=row.content_ref,
        content_hash=row.content_hash,
        configuration_id=row.configuration_id,
        results=parsed if isinstance(parsed, dict) else {},
        provider=row.provider,
        model=row.model,
        duration_ms=row.duration_ms,
        tokens_used=row.tokens_used,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
