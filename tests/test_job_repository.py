from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest
from support import MutableClock

from edu_analyzer.analysis.hashing import content_fingerprint, content_hash
from edu_analyzer.analysis.prompts import DEFAULT_CRITERIA, Criterion
from edu_analyzer.jobs.errors import ActiveRunExistsError, InvalidRunTransition, RunNotFoundError
from edu_analyzer.jobs.models import (
    AnalysisWrite,
    ContentItemWrite,
    FailureClass,
    JobOutcome,
    JobStatus,
    RunStatus,
)
from edu_analyzer.jobs.repository import JobQueueRepository
from edu_analyzer.jobs.run_state import STOPPED_BY_USER_ERROR

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Claims, Leases & Run Accounting"),
]


def _create_run(
    repository: JobQueueRepository,
    refs: list[str],
    *,
    target_id: str = "program-1",
    max_attempts: int = 3,
    configuration_id: str | None = None,
):
    return repository.create_run(
        target_id=target_id,
        content_refs=refs,
        configuration_id=configuration_id,
        max_concurrency=3,
        max_attempts=max_attempts,
    )


def _analysis(job, *, body: str, configuration_id: str | None = None) -> AnalysisWrite:
    return AnalysisWrite(
        job_id=job.job_id,
        run_id=job.run_id,
        content_ref=job.content_ref,
        content_hash=content_hash(body),
        configuration_id=configuration_id,
        results={"logic": {"score": 1, "comment": "ok"}},
        provider="echo",
        model="echo-v1",
        duration_ms=12,
    )


def test_create_run_enqueues_one_job_per_ref_in_order(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1", "lesson-2", "lesson-3"])

    assert run.status is RunStatus.QUEUED
    assert run.total_units == 3
    assert run.queued_count == 3
    jobs = repository.list_jobs(run_id=run.run_id)
    assert [job.content_ref for job in jobs] == ["lesson-1", "lesson-2", "lesson-3"]
    assert all(job.status is JobStatus.QUEUED and job.attempt_count == 0 for job in jobs)
    events = repository.list_job_events(run_id=run.run_id)
    assert [event.event_type for event in events] == ["enqueued"] * 3


def test_run_without_jobs_is_completed_immediately(repository: JobQueueRepository) -> None:
    run = _create_run(repository, [])

    assert run.status is RunStatus.COMPLETED
    assert run.finished_at is not None
    assert repository.claim(worker_id="w1") is None


def test_second_active_run_for_same_target_is_rejected(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])

    with pytest.raises(ActiveRunExistsError):
        _create_run(repository, ["lesson-2"])

    other = _create_run(repository, ["lesson-2"], target_id="program-2")
    assert other.status is RunStatus.QUEUED


def test_finished_run_does_not_block_new_run(repository: JobQueueRepository) -> None:
    first = _create_run(repository, ["lesson-1"])
    assert repository.stop_run(run_id=first.run_id, from_status=RunStatus.QUEUED) == 1

    second = _create_run(repository, ["lesson-1"])
    assert second.run_id != first.run_id


def test_claim_starts_run_and_takes_oldest_job(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1", "lesson-2"])

    job = repository.claim(worker_id="w1")

    assert job is not None
    assert job.content_ref == "lesson-1"
    assert job.status is JobStatus.RUNNING
    assert job.lock_owner == "w1"
    assert job.attempt_count == 0
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.RUNNING
    assert stored.started_at is not None
    assert stored.running_count == 1
    assert stored.queued_count == 1


def test_claim_respects_run_scope(repository: JobQueueRepository) -> None:
    _create_run(repository, ["a-1"], target_id="a")
    run_b = _create_run(repository, ["b-1"], target_id="b")

    job = repository.claim(worker_id="w1", run_id=run_b.run_id)

    assert job is not None
    assert job.content_ref == "b-1"


def test_paused_run_jobs_are_not_claimed(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1", "lesson-2"])
    assert repository.claim(worker_id="w1") is not None
    assert repository.transition_run(
        run_id=run.run_id,
        from_status=RunStatus.RUNNING,
        to_status=RunStatus.PAUSED,
    )

    assert repository.claim(worker_id="w2") is None


def test_transition_run_is_compare_and_set(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1"])

    assert not repository.transition_run(
        run_id=run.run_id,
        from_status=RunStatus.RUNNING,
        to_status=RunStatus.PAUSED,
    )
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.QUEUED


def test_concurrent_claims_have_exactly_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    clock = MutableClock()
    setup = JobQueueRepository(db_path, clock=clock)
    setup.init_schema()
    _create_run(setup, ["only-job"])

    workers = 4
    barrier = threading.Barrier(workers)
    results: list[object] = []
    results_lock = threading.Lock()

    def claim(index: int) -> None:
        repo = JobQueueRepository(db_path, clock=clock)
        try:
            barrier.wait()
            job = repo.claim(worker_id=f"w{index}")
            with results_lock:
                results.append(job)
        finally:
            repo.close()

    threads = [threading.Thread(target=claim, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [job for job in results if job is not None]
    assert len(results) == workers
    assert len(winners) == 1
    setup.close()


def test_finalize_success_completes_run(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="w1")
    assert job is not None

    assert repository.finalize(job_id=job.job_id, worker_id="w1", outcome=JobOutcome.SUCCEEDED)

    stored_job = repository.get_job(job.job_id)
    assert stored_job is not None
    assert stored_job.status is JobStatus.SUCCEEDED
    assert stored_job.lock_owner is None
    assert stored_job.finished_at is not None
    assert stored_job.attempt_count == 0
    stored_run = repository.get_run(run.run_id)
    assert stored_run is not None
    assert stored_run.status is RunStatus.COMPLETED
    assert stored_run.succeeded_count == 1


def test_finalize_by_non_owner_is_rejected(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="w1")
    assert job is not None

    assert not repository.finalize(
        job_id=job.job_id,
        worker_id="intruder",
        outcome=JobOutcome.SUCCEEDED,
    )
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.RUNNING


def test_retryable_failures_stop_at_max_attempts(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1"], max_attempts=3)

    statuses: list[JobStatus] = []
    for attempt in range(3):
        job = repository.claim(worker_id=f"w{attempt}")
        assert job is not None
        assert repository.finalize(
            job_id=job.job_id,
            worker_id=f"w{attempt}",
            outcome=JobOutcome.RETRYABLE_FAILURE,
            error="provider timed out",
            failure_class=FailureClass.TIMEOUT,
        )
        stored = repository.get_job(job.job_id)
        assert stored is not None
        statuses.append(stored.status)

    assert statuses == [JobStatus.QUEUED, JobStatus.QUEUED, JobStatus.FAILED]
    assert repository.claim(worker_id="late") is None
    final_job = repository.list_jobs(run_id=run.run_id)[0]
    assert final_job.attempt_count == 3
    assert final_job.last_failure_class is FailureClass.TIMEOUT
    assert final_job.last_error == "provider timed out"
    stored_run = repository.get_run(run.run_id)
    assert stored_run is not None
    assert stored_run.status is RunStatus.FAILED
    events = repository.list_job_events(job_id=final_job.job_id)
    event_types = [event.event_type for event in events]
    assert event_types.count("retry_scheduled") == 2
    assert event_types[-1] == "failed"


def test_fatal_failure_fails_job_at_once(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="w1")
    assert job is not None

    repository.finalize(
        job_id=job.job_id,
        worker_id="w1",
        outcome=JobOutcome.FAILED,
        error="bad key",
        failure_class=FailureClass.AUTH,
    )

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED
    assert stored.attempt_count == 1


def test_long_errors_are_truncated(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="w1")
    assert job is not None

    repository.finalize(
        job_id=job.job_id,
        worker_id="w1",
        outcome=JobOutcome.FAILED,
        error="x" * 5_000,
        failure_class=FailureClass.INTERNAL,
    )

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.last_error is not None
    assert len(stored.last_error) == 2_000


def test_expired_lock_is_released_without_consuming_attempt(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="crashed")
    assert job is not None

    clock.advance(seconds=30)
    assert repository.release_stale_locks() == 0

    clock.advance(seconds=61)
    assert repository.release_stale_locks() == 1

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.QUEUED
    assert stored.lock_owner is None
    assert stored.attempt_count == 0
    events = repository.list_job_events(job_id=job.job_id)
    assert events[-1].event_type == "lock_expired"
    assert events[-1].details["previous_owner"] == "crashed"


def test_expired_lock_can_be_reclaimed_directly(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    _create_run(repository, ["lesson-1"])
    first = repository.claim(worker_id="crashed")
    assert first is not None

    assert repository.claim(worker_id="w2") is None
    clock.advance(seconds=91)
    second = repository.claim(worker_id="w2")

    assert second is not None
    assert second.job_id == first.job_id
    assert second.lock_owner == "w2"
    assert not repository.finalize(
        job_id=first.job_id,
        worker_id="crashed",
        outcome=JobOutcome.SUCCEEDED,
    )
    events = repository.list_job_events(job_id=first.job_id)
    assert events[-1].event_type == "reclaimed"


def test_stop_fails_queued_jobs_and_keeps_running_job(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1", "lesson-2", "lesson-3"])
    running = repository.claim(worker_id="w1")
    assert running is not None

    stopped = repository.stop_run(run_id=run.run_id, from_status=RunStatus.RUNNING)

    assert stopped == 2
    failed = repository.list_jobs(run_id=run.run_id, status=JobStatus.FAILED)
    assert {job.last_error for job in failed} == {STOPPED_BY_USER_ERROR}
    assert {job.last_failure_class for job in failed} == {FailureClass.STOPPED}
    assert repository.claim(worker_id="w2") is None

    assert repository.finalize(
        job_id=running.job_id,
        worker_id="w1",
        outcome=JobOutcome.SUCCEEDED,
    )
    stored_run = repository.get_run(run.run_id)
    assert stored_run is not None
    assert stored_run.status is RunStatus.STOPPED
    assert stored_run.succeeded_count == 1
    assert stored_run.failed_count == 2


def test_retryable_failure_of_stopped_run_is_not_requeued(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1", "lesson-2"])
    running = repository.claim(worker_id="w1")
    assert running is not None
    repository.stop_run(run_id=run.run_id, from_status=RunStatus.RUNNING)

    status = repository.finalize(
        job_id=running.job_id,
        worker_id="w1",
        outcome=JobOutcome.RETRYABLE_FAILURE,
        error="provider timed out",
        failure_class=FailureClass.TIMEOUT,
    )

    assert status is JobStatus.FAILED
    stored = repository.get_job(running.job_id)
    assert stored is not None
    assert stored.attempt_count == 1
    assert stored.last_error == "provider timed out"
    assert stored.last_failure_class is FailureClass.STOPPED
    stored_run = repository.get_run(run.run_id)
    assert stored_run is not None
    assert (stored_run.queued_count, stored_run.failed_count) == (0, 2)
    assert repository.list_job_events(job_id=running.job_id)[-1].event_type == "failed"


def test_stop_with_stale_status_returns_none(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1"])

    assert repository.stop_run(run_id=run.run_id, from_status=RunStatus.PAUSED) is None


def test_stale_lock_of_stopped_run_fails_job(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    run = _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="crashed")
    assert job is not None
    repository.stop_run(run_id=run.run_id, from_status=RunStatus.RUNNING)

    clock.advance(seconds=120)
    assert repository.release_stale_locks() == 1

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED
    assert stored.last_error == STOPPED_BY_USER_ERROR


def test_run_counts_and_recent_errors(repository: JobQueueRepository, clock: MutableClock) -> None:
    run = _create_run(repository, ["lesson-1", "lesson-2", "lesson-3"], max_attempts=1)
    for index in range(2):
        job = repository.claim(worker_id="w1")
        assert job is not None
        clock.advance(seconds=1)
        repository.finalize(
            job_id=job.job_id,
            worker_id="w1",
            outcome=JobOutcome.FAILED,
            error=f"error {index}",
            failure_class=FailureClass.PROVIDER_NON_RETRYABLE,
        )

    counts = repository.count_jobs(run.run_id)
    assert (counts.queued, counts.failed, counts.total, counts.completed) == (1, 2, 3, 2)
    errors = repository.recent_errors(run_id=run.run_id, limit=5)
    assert [error.error for error in errors] == ["error 1", "error 0"]
    assert repository.recent_errors(run_id=run.run_id, limit=1)[0].content_ref == "lesson-2"


def test_enqueue_jobs_extends_active_run(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1"])

    added = repository.enqueue_jobs(run_id=run.run_id, content_refs=["lesson-2"], max_attempts=3)

    assert added == 1

    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.total_units == 2
    assert stored.queued_count == 2


def test_enqueue_jobs_rejects_finished_or_unknown_run(repository: JobQueueRepository) -> None:
    run = _create_run(repository, ["lesson-1"])
    repository.stop_run(run_id=run.run_id, from_status=RunStatus.QUEUED)

    with pytest.raises(InvalidRunTransition):
        repository.enqueue_jobs(run_id=run.run_id, content_refs=["lesson-2"], max_attempts=3)
    with pytest.raises(RunNotFoundError):
        repository.enqueue_jobs(run_id="missing", content_refs=["lesson-2"], max_attempts=3)


def test_save_analysis_upserts_by_job(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="w1")
    assert job is not None

    first = repository.save_analysis(_analysis(job, body="Version one"))
    second = repository.save_analysis(_analysis(job, body="Version two"))

    assert first.analysis_id == second.analysis_id
    assert second.content_hash == content_hash("Version two")
    stored = repository.get_analysis_for_job(job.job_id)
    assert stored is not None
    assert stored.results["logic"]["score"] == 1


def test_content_already_scored_requires_succeeded_job(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])
    job = repository.claim(worker_id="w1")
    assert job is not None
    repository.save_analysis(_analysis(job, body="Lesson body"))
    fingerprint = content_fingerprint("Lesson body")

    assert not repository.content_already_scored("lesson-1", fingerprint)

    repository.finalize(job_id=job.job_id, worker_id="w1", outcome=JobOutcome.SUCCEEDED)

    assert repository.content_already_scored("lesson-1", fingerprint)
    assert not repository.content_already_scored("lesson-1", content_fingerprint("Edited body"))
    assert not repository.content_already_scored(
        "lesson-1",
        content_fingerprint("Lesson body", "cfg-2"),
    )
    latest = repository.latest_analysis("lesson-1")
    assert latest is not None
    assert latest.job_id == job.job_id


def test_content_items_track_body_hash(repository: JobQueueRepository) -> None:
    created = repository.upsert_content_item(
        ContentItemWrite(content_ref="lesson-1", title="Fractions", body="Halves and quarters"),
    )
    assert created.content_hash == content_hash("Halves and quarters")

    updated = repository.upsert_content_item(
        ContentItemWrite(content_ref="lesson-1", source_url="https://example.test/l1"),
    )
    assert updated.title == "Fractions"
    assert updated.content_hash == created.content_hash

    digest = repository.record_fetched_content(content_ref="lesson-1", body="New text")
    stored = repository.get_content_item("lesson-1")
    assert stored is not None
    assert stored.body == "New text"
    assert stored.content_hash == digest


def test_criteria_replace_and_default_fallback(repository: JobQueueRepository) -> None:
    assert repository.load_criteria(None) == list(DEFAULT_CRITERIA)
    assert repository.load_criteria("cfg-1") == list(DEFAULT_CRITERIA)

    repository.set_criteria(
        configuration_id="cfg-1",
        criteria=[
            Criterion("depth", "Rate depth of {{content}}", display_order=2),
            Criterion("clarity", "Rate clarity of {{content}}", display_order=1),
        ],
    )
    assert [criterion.name for criterion in repository.load_criteria("cfg-1")] == [
        "clarity",
        "depth",
    ]

    assert repository.set_criteria(
        configuration_id="cfg-1",
        criteria=[Criterion("depth", "Rate depth again: {{content}}")],
    ) == 1
    loaded = repository.load_criteria("cfg-1")
    assert [criterion.name for criterion in loaded] == ["depth"]
    assert loaded[0].prompt_template == "Rate depth again: {{content}}"

    with pytest.raises(ValueError, match="At least one criterion"):
        repository.set_criteria(configuration_id="cfg-1", criteria=[])


def test_list_runs_is_scoped_to_owner(repository: JobQueueRepository) -> None:
    _create_run(repository, ["lesson-1"])
    other = JobQueueRepository(repository.db_path, user_id="methodist-2", user_name="Second")
    other.init_schema()
    try:
        _create_run(other, ["lesson-9"])

        assert len(repository.list_runs()) == 1
        assert len(other.list_runs()) == 1
        assert len(repository.list_claimable_runs()) == 2
    finally:
        other.close()


def test_list_job_events_requires_a_filter(repository: JobQueueRepository) -> None:
    with pytest.raises(ValueError, match="job_id or run_id"):
        repository.list_job_events()
