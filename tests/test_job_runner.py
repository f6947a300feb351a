from __future__ import annotations

import itertools

import allure
import pytest
from support import DictContentSource, MutableClock, ScriptedProvider, build_orchestrator

from edu_analyzer.analysis.prompts import DEFAULT_CRITERIA
from edu_analyzer.jobs.errors import RunNotFoundError
from edu_analyzer.jobs.models import ContentItemWrite, FailureClass, JobStatus, RunCreate, RunStatus
from edu_analyzer.jobs.repository import JobQueueRepository
from edu_analyzer.jobs.runs import RunController
from edu_analyzer.jobs.worker import JobRunner
from edu_analyzer.providers.catalog import ProviderKind
from edu_analyzer.providers.errors import AuthError, ProviderTimeout, RateLimited

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Runner"),
]

BODIES = {
    "lesson-1": "Fractions: halves, thirds and quarters with worked examples.",
    "lesson-2": "Decimals: place value and rounding.",
    "lesson-3": "Percentages as fractions of one hundred.",
}


def _runner(
    repository: JobQueueRepository,
    provider: ScriptedProvider | None = None,
    *,
    bodies: dict[str, str] | None = None,
    **kwargs: object,
) -> JobRunner:
    return JobRunner(
        repository=repository,
        orchestrator=build_orchestrator(provider or ScriptedProvider(ProviderKind.OPENAI)),
        content_source=DictContentSource(dict(BODIES) if bodies is None else bodies),
        worker_id="runner-1",
        **kwargs,  # type: ignore[arg-type]
    )


def _create(
    repository: JobQueueRepository,
    refs: list[str],
    *,
    target_id: str = "program-1",
    max_concurrency: int = 3,
    max_attempts: int = 3,
):
    return repository.create_run(
        target_id=target_id,
        content_refs=refs,
        configuration_id=None,
        max_concurrency=max_concurrency,
        max_attempts=max_attempts,
    )


def test_tick_scores_every_criterion_and_completes_run(repository: JobQueueRepository) -> None:
    provider = ScriptedProvider(ProviderKind.OPENAI)
    run = _create(repository, ["lesson-1"])

    summary = _runner(repository, provider).run_tick(3)

    assert (summary.claimed, summary.succeeded, summary.processed) == (1, 1, 1)
    assert len(provider.prompts) == len(DEFAULT_CRITERIA)
    assert all(BODIES["lesson-1"] in prompt for prompt in provider.prompts)
    job = repository.list_jobs(run_id=run.run_id)[0]
    analysis = repository.get_analysis_for_job(job.job_id)
    assert analysis is not None
    assert set(analysis.results) == {criterion.name for criterion in DEFAULT_CRITERIA}
    assert analysis.results["logic"]["score"] == 1
    assert analysis.tokens_used == 10 * len(DEFAULT_CRITERIA)
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.COMPLETED
    event_types = [event.event_type for event in repository.list_job_events(job_id=job.job_id)]
    assert event_types[:3] == ["enqueued", "claimed", "execution_started"]
    assert event_types.count("criterion_scored") == len(DEFAULT_CRITERIA)
    assert event_types[-1] == "succeeded"


def test_already_scored_item_is_not_enqueued_and_tick_completes_run(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    for ref in ("lesson-1", "lesson-2"):
        repository.upsert_content_item(ContentItemWrite(content_ref=ref, body=BODIES[ref]))
    controller = RunController(repository, clock=clock)
    first = controller.create_run(RunCreate(target_id="program-1", content_refs=["lesson-1"]))
    runner = _runner(repository)
    runner.process_tick(1)
    assert controller.status(first.run_id).run.status is RunStatus.COMPLETED

    second = controller.create_run(
        RunCreate(target_id="program-1", content_refs=["lesson-1", "lesson-2"]),
    )
    assert [job.content_ref for job in repository.list_jobs(run_id=second.run_id)] == ["lesson-2"]

    assert runner.process_tick(1) == 1

    report = controller.status(second.run_id)
    assert report.run.status is RunStatus.COMPLETED
    assert report.counts.succeeded == 1


def test_unchanged_content_is_skipped(repository: JobQueueRepository) -> None:
    runner = _runner(repository)
    _create(repository, ["lesson-1"], target_id="program-1")
    runner.run_tick(1)

    again = _create(repository, ["lesson-1"], target_id="program-2")
    summary = runner.run_tick(1)

    assert summary.skipped == 1
    job = repository.list_jobs(run_id=again.run_id)[0]
    assert job.status is JobStatus.SKIPPED
    assert repository.get_analysis_for_job(job.job_id) is None
    assert repository.list_job_events(job_id=job.job_id)[-1].details["reason"] == (
        "content_unchanged"
    )
    stored = repository.get_run(again.run_id)
    assert stored is not None
    assert stored.status is RunStatus.COMPLETED


def test_fatal_provider_error_fails_job_and_run(repository: JobQueueRepository) -> None:
    provider = ScriptedProvider(ProviderKind.OPENAI, [AuthError("invalid api key")])
    run = _create(repository, ["lesson-1"])

    summary = _runner(repository, provider).run_tick(1)

    assert summary.failed == 1
    job = repository.list_jobs(run_id=run.run_id)[0]
    assert job.status is JobStatus.FAILED
    assert job.last_failure_class is FailureClass.AUTH
    assert job.last_error == "invalid api key"
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.FAILED


def test_billing_exhaustion_is_not_retried(repository: JobQueueRepository) -> None:
    provider = ScriptedProvider(ProviderKind.OPENAI, [RateLimited("no credits", billing=True)])
    run = _create(repository, ["lesson-1"])

    _runner(repository, provider).run_tick(1)

    job = repository.list_jobs(run_id=run.run_id)[0]
    assert job.last_failure_class is FailureClass.BILLING_OR_QUOTA
    assert job.status is JobStatus.FAILED


def test_content_fetch_failure_requeues_job(repository: JobQueueRepository) -> None:
    run = _create(repository, ["missing-lesson"])

    summary = _runner(repository).run_tick(1)

    assert summary.retried == 1
    job = repository.list_jobs(run_id=run.run_id)[0]
    assert job.status is JobStatus.QUEUED
    assert job.attempt_count == 1
    assert job.last_failure_class is FailureClass.CONTENT_FETCH


def test_retryable_failures_exhaust_max_attempts(repository: JobQueueRepository) -> None:
    run = _create(repository, ["missing-lesson"], max_attempts=2)
    runner = _runner(repository)

    first = runner.run_tick(1)
    second = runner.run_tick(1)
    third = runner.run_tick(1)

    assert (first.retried, second.failed, third.claimed) == (1, 1, 0)
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.FAILED


def test_bad_output_gets_one_job_level_retry(repository: JobQueueRepository) -> None:
    provider = ScriptedProvider(ProviderKind.OPENAI)
    provider.default_reply = "I would rather not grade this."
    run = _create(repository, ["lesson-1"], max_attempts=5)
    runner = _runner(repository, provider)

    first = runner.run_tick(1)
    second = runner.run_tick(1)

    assert (first.retried, second.failed) == (1, 1)
    job = repository.list_jobs(run_id=run.run_id)[0]
    assert job.status is JobStatus.FAILED
    assert job.attempt_count == 2
    assert job.last_failure_class is FailureClass.BAD_OUTPUT
    assert len(provider.prompts) == 4


def _stopping_runner(
    repository: JobQueueRepository,
    controller: RunController,
    run_id: str,
    provider: ScriptedProvider,
) -> JobRunner:
    class StoppingSource(DictContentSource):
        def fetch_content(self, content_ref: str) -> str:
            controller.stop(run_id)
            return super().fetch_content(content_ref)

    return JobRunner(
        repository=repository,
        orchestrator=build_orchestrator(provider),
        content_source=StoppingSource(dict(BODIES)),
        worker_id="runner-1",
    )


def test_stop_during_execution_does_not_revive_run(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    controller = RunController(repository, clock=clock)
    run = _create(repository, ["lesson-1", "lesson-2"])
    runner = _stopping_runner(
        repository, controller, run.run_id, ScriptedProvider(ProviderKind.OPENAI)
    )

    summary = runner.run_tick(1, run_id=run.run_id)

    assert summary.succeeded == 1
    report = controller.status(run.run_id)
    assert report.run.status is RunStatus.STOPPED
    assert (report.counts.succeeded, report.counts.failed) == (1, 1)
    assert runner.run_tick(1, run_id=run.run_id).claimed == 0


def test_retryable_failure_after_stop_fails_job_instead_of_requeueing(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    controller = RunController(repository, clock=clock)
    run = _create(repository, ["lesson-1", "lesson-2"])
    provider = ScriptedProvider(ProviderKind.OPENAI)
    provider.default_reply = ProviderTimeout("read timed out")
    runner = _stopping_runner(repository, controller, run.run_id, provider)

    summary = runner.run_tick(1, run_id=run.run_id)

    assert (summary.retried, summary.failed) == (0, 1)
    jobs = repository.list_jobs(run_id=run.run_id)
    assert [job.status for job in jobs] == [JobStatus.FAILED, JobStatus.FAILED]
    assert {job.last_failure_class for job in jobs} == {FailureClass.STOPPED}
    assert "read timed out" in {job.last_error for job in jobs}
    report = controller.status(run.run_id)
    assert report.run.status is RunStatus.STOPPED
    assert (report.counts.queued, report.counts.failed) == (0, 2)
    assert report.estimated_time_remaining_ms == 0
    assert runner.run_tick(1).claimed == 0
    assert runner.run_tick(1, run_id=run.run_id).claimed == 0


def test_fatal_failure_after_stop_keeps_its_failure_class(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    controller = RunController(repository, clock=clock)
    run = _create(repository, ["lesson-1", "lesson-2"])
    provider = ScriptedProvider(ProviderKind.OPENAI, [AuthError("invalid api key")])
    runner = _stopping_runner(repository, controller, run.run_id, provider)

    summary = runner.run_tick(1, run_id=run.run_id)

    assert summary.failed == 1
    failure_classes = {job.last_failure_class for job in repository.list_jobs(run_id=run.run_id)}
    assert failure_classes == {FailureClass.AUTH, FailureClass.STOPPED}
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.STOPPED
    assert stored.queued_count == 0


def test_tick_claims_up_to_max_concurrency(repository: JobQueueRepository) -> None:
    run = _create(repository, ["lesson-1", "lesson-2", "lesson-3"], max_concurrency=3)

    summary = _runner(repository).run_tick(2)

    assert summary.claimed == 2
    stored = repository.get_run(run.run_id)
    assert stored is not None
    assert (stored.succeeded_count, stored.queued_count) == (2, 1)
    assert stored.status is RunStatus.RUNNING


def test_plan_budget_round_robins_runs_in_creation_order(
    repository: JobQueueRepository,
    clock: MutableClock,
) -> None:
    first = _create(repository, ["a"], target_id="a", max_concurrency=1)
    clock.advance(seconds=1)
    second = _create(repository, ["b"], target_id="b", max_concurrency=2)
    clock.advance(seconds=1)
    third = _create(repository, ["c"], target_id="c", max_concurrency=3)
    runner = _runner(repository)

    assert runner.plan_budget(4) == [first.run_id, second.run_id, third.run_id, second.run_id]
    assert len(runner.plan_budget(50)) == 6


def test_plan_budget_respects_ceiling(repository: JobQueueRepository) -> None:
    _create(repository, ["a"], target_id="a", max_concurrency=5)
    runner = _runner(repository, concurrency_ceiling=2)

    assert len(runner.plan_budget(10)) == 2


def test_plan_budget_for_single_run(repository: JobQueueRepository, clock: MutableClock) -> None:
    run = _create(repository, ["lesson-1"])
    runner = _runner(repository)

    assert runner.plan_budget(3, run_id=run.run_id) == [run.run_id] * 3

    RunController(repository, clock=clock).stop(run.run_id)
    assert runner.plan_budget(3, run_id=run.run_id) == []
    with pytest.raises(RunNotFoundError):
        runner.plan_budget(3, run_id="missing")


def test_tick_deadline_stops_claiming(repository: JobQueueRepository) -> None:
    _create(repository, ["lesson-1"])
    ticks = itertools.count(step=5)
    runner = _runner(repository, tick_deadline_seconds=1.0, clock=lambda: float(next(ticks)))

    assert runner.run_tick(3).claimed == 0


def test_run_loop_drains_queue_and_exits_when_idle(repository: JobQueueRepository) -> None:
    _create(repository, ["lesson-1", "lesson-2", "lesson-3"])
    runner = _runner(repository)

    loop = runner.run_loop(1, max_idle_ticks=1)

    assert loop.ticks == 4
    assert loop.idle_ticks == 1
    assert loop.totals is not None
    assert loop.totals.succeeded == 3


def test_run_loop_honors_max_ticks_and_stop_request(repository: JobQueueRepository) -> None:
    _create(repository, ["lesson-1", "lesson-2", "lesson-3"])
    runner = _runner(repository)

    assert runner.run_loop(1, max_ticks=2).ticks == 2

    runner.request_stop()
    assert runner.run_loop(1).ticks == 0
