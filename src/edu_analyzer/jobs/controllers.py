"""Controllers for analyzer CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from edu_analyzer.analysis.prompts import Criterion
from edu_analyzer.config import Settings
from edu_analyzer.http.fetcher import HttpFetcher
from edu_analyzer.jobs.content import HttpContentSource
from edu_analyzer.jobs.models import ContentItemWrite, RunCreate, RunStatus, RunStatusReport
from edu_analyzer.jobs.progress import (
    CompositeProgressSink,
    LoggingProgressSink,
    RepositoryProgressSink,
)
from edu_analyzer.jobs.repository import JobQueueRepository
from edu_analyzer.jobs.runs import RunController
from edu_analyzer.jobs.worker import JobRunner
from edu_analyzer.providers.catalog import ModelCatalog
from edu_analyzer.providers.orchestrator import ProviderOrchestrator
from edu_analyzer.providers.registry import ProviderRegistry


@dataclass(slots=True)
class DbUpgradeCommand:
    """CLI input for schema migration."""

    db_path: Path | None


@dataclass(slots=True)
class ContentAddCommand:
    """CLI input for content item upsert."""

    db_path: Path | None
    content_ref: str
    title: str | None
    source_url: str | None
    body_file: Path | None


@dataclass(slots=True)
class CriteriaSetCommand:
    """CLI input for replacing a configuration's criteria from a JSON file."""

    db_path: Path | None
    configuration_id: str
    criteria_file: Path


@dataclass(slots=True)
class CriteriaShowCommand:
    """CLI input for criteria listing."""

    db_path: Path | None
    configuration_id: str | None


@dataclass(slots=True)
class RunCreateCommand:
    """CLI input for run creation."""

    db_path: Path | None
    target_id: str
    content_refs: tuple[str, ...]
    configuration_id: str | None
    max_concurrency: int
    max_attempts: int | None


@dataclass(slots=True)
class RunMutateCommand:
    """CLI input for pause/resume/stop operations."""

    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class RunStatusCommand:
    """CLI input for run status."""

    db_path: Path | None
    run_id: str
    output_format: str = "table"


@dataclass(slots=True)
class RunListCommand:
    """CLI input for run listing."""

    db_path: Path | None
    target_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for tick execution."""

    db_path: Path | None
    max_concurrency: int
    run_id: str | None
    loop: bool = False
    max_ticks: int | None = None
    max_idle_ticks: int = 1


class AnalyzerCliController:
    """Coordinates content, run lifecycle and worker CLI operations."""

    def upgrade_db(self, command: DbUpgradeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Database schema is up to date: {settings.db_path}"]

    def add_content(self, command: ContentAddCommand) -> list[str]:
        if command.body_file is None and not command.source_url:
            raise ValueError("Either a body file or a source URL is required.")
        body = command.body_file.read_text(encoding="utf-8") if command.body_file else None
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            item = repository.upsert_content_item(
                ContentItemWrite(
                    content_ref=command.content_ref,
                    title=command.title,
                    source_url=command.source_url,
                    body=body,
                ),
            )
        return [
            f"Content stored: content_ref={item.content_ref} "
            f"hash={item.content_hash or '-'} source_url={item.source_url or '-'}",
        ]

    def set_criteria(self, command: CriteriaSetCommand) -> list[str]:
        criteria = _load_criteria_file(command.criteria_file)
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            count = repository.set_criteria(
                configuration_id=command.configuration_id,
                criteria=criteria,
            )
        return [f"Configuration {command.configuration_id}: {count} active criteria"]

    def show_criteria(self, command: CriteriaShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            criteria = repository.load_criteria(command.configuration_id)
        lines = [f"Criteria for configuration {command.configuration_id or '(default)'}:"]
        for criterion in criteria:
            first_line = criterion.prompt_template.strip().splitlines()[0][:80]
            lines.append(f"  {criterion.display_order}. {criterion.name}: {first_line}")
        return lines

    def create_run(self, command: RunCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = RunController(repository).create_run(
                RunCreate(
                    target_id=command.target_id,
                    content_refs=list(command.content_refs),
                    configuration_id=command.configuration_id,
                    max_concurrency=command.max_concurrency,
                    max_attempts=command.max_attempts or settings.queue.max_attempts,
                ),
            )
        skipped = len(set(command.content_refs)) - run.total_units
        return [
            f"Run created: run_id={run.run_id} target={run.target_id} status={run.status.value}",
            f"Jobs: {run.total_units} queued, {max(skipped, 0)} skipped as already scored",
        ]

    def pause_run(self, command: RunMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = RunController(repository).pause(command.run_id)
        return [f"Run {run.run_id} paused."]

    def resume_run(self, command: RunMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = RunController(repository).resume(command.run_id)
        return [f"Run {run.run_id} resumed: status={run.status.value}"]

    def stop_run(self, command: RunMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = RunController(repository).stop(command.run_id)
        return [f"Run {run.run_id} stopped: failed={run.failed_count} running={run.running_count}"]

    def run_status(self, command: RunStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = RunController(
                repository,
                recent_errors_limit=settings.queue.recent_errors_limit,
            ).status(command.run_id)
        if command.output_format == "json":
            return [json.dumps(_report_to_dict(report), indent=2, ensure_ascii=False)]
        return _render_report(report)

    def list_runs(self, command: RunListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = RunStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            runs = RunController(repository).list_runs(
                target_id=command.target_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Runs: {len(runs)}"]
        for run in runs:
            lines.append(
                "  "
                f"run_id={run.run_id} target={run.target_id} status={run.status.value} "
                f"done={run.completed_count}/{run.total_units} failed={run.failed_count} "
                f"created_at={run.created_at.isoformat()}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        catalog = _model_catalog(settings)
        registry = ProviderRegistry.from_settings(settings.providers)
        fetcher = HttpFetcher(
            timeout_seconds=settings.content.request_timeout_seconds,
            max_retries=settings.content.max_retries,
        )
        try:
            with _repository(settings) as repository:
                runner = JobRunner(
                    repository=repository,
                    orchestrator=ProviderOrchestrator(
                        registry=registry,
                        catalog=catalog,
                        settings=settings.providers,
                    ),
                    content_source=HttpContentSource(
                        repository,
                        fetcher,
                        max_chars=settings.content.max_chars,
                    ),
                    progress=CompositeProgressSink(
                        RepositoryProgressSink(repository),
                        LoggingProgressSink(),
                    ),
                    concurrency_ceiling=settings.queue.global_concurrency_ceiling,
                    tick_deadline_seconds=settings.queue.tick_deadline_seconds,
                    idle_poll_seconds=settings.queue.idle_poll_seconds,
                )
                if not command.loop:
                    tick = runner.run_tick(command.max_concurrency, run_id=command.run_id)
                    return [
                        "Tick summary: "
                        f"processed={tick.processed} claimed={tick.claimed} "
                        f"succeeded={tick.succeeded} skipped={tick.skipped} "
                        f"failed={tick.failed} retried={tick.retried} "
                        f"released_locks={tick.released_locks}",
                    ]
                loop = runner.run_loop(
                    command.max_concurrency,
                    run_id=command.run_id,
                    max_ticks=command.max_ticks,
                    max_idle_ticks=command.max_idle_ticks,
                )
        finally:
            fetcher.close()
            registry.close()

        totals = loop.totals
        processed = totals.processed if totals is not None else 0
        return [
            "Worker summary: "
            f"ticks={loop.ticks} idle_ticks={loop.idle_ticks} processed={processed}",
        ]


def _model_catalog(settings: Settings) -> ModelCatalog:
    if settings.providers.models_file is not None:
        return ModelCatalog.from_json_file(
            settings.providers.models_file,
            default_model_id=settings.providers.default_model,
        )
    if settings.providers.default_model:
        return ModelCatalog.builtin(default_model_id=settings.providers.default_model)
    return ModelCatalog.builtin()


def _load_criteria_file(path: Path) -> list[Criterion]:
    """Read ``[{"name", "prompt_template", "display_order"?}]`` or ``{name: template}``."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValueError(f"Cannot read criteria file {path}: {error}") from error

    if isinstance(payload, dict):
        entries = [
            {"name": name, "prompt_template": template, "display_order": index}
            for index, (name, template) in enumerate(payload.items())
        ]
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValueError(f"Criteria file {path} must contain a list or an object.")

    criteria: list[Criterion] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Criterion #{index} in {path} must be an object.")
        name = str(entry.get("name") or "").strip()
        template = str(entry.get("prompt_template") or entry.get("prompt") or "").strip()
        if not name or not template:
            raise ValueError(f"Criterion #{index} in {path} needs a name and a prompt_template.")
        criteria.append(
            Criterion(
                name=name,
                prompt_template=template,
                display_order=int(entry.get("display_order", index)),
            ),
        )
    return criteria


def _render_report(report: RunStatusReport) -> list[str]:
    run = report.run
    counts = report.counts
    lines = [
        f"Run {run.run_id}: status={run.status.value} target={run.target_id} "
        f"configuration={run.configuration_id or '-'} max_concurrency={run.max_concurrency}",
        f"Jobs: total={counts.total} queued={counts.queued} running={counts.running} "
        f"succeeded={counts.succeeded} failed={counts.failed} skipped={counts.skipped}",
    ]
    if report.estimated_time_remaining_ms is not None:
        lines.append(
            f"Estimated time remaining: {report.estimated_time_remaining_ms / 1000:.1f}s",
        )
    if report.recent_errors:
        lines.append("Recent errors:")
        for error in report.recent_errors:
            failure_class = error.failure_class.value if error.failure_class else "-"
            lines.append(
                f"  job_id={error.job_id} content_ref={error.content_ref} "
                f"failure_class={failure_class} error={error.error}",
            )
    return lines


def _report_to_dict(report: RunStatusReport) -> dict[str, object]:
    run = report.run
    return {
        "run_id": run.run_id,
        "target_id": run.target_id,
        "status": run.status.value,
        "configuration_id": run.configuration_id,
        "max_concurrency": run.max_concurrency,
        "created_at": run.created_at.isoformat(),
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "counts": {
            "total": report.counts.total,
            "queued": report.counts.queued,
            "running": report.counts.running,
            "succeeded": report.counts.succeeded,
            "failed": report.counts.failed,
            "skipped": report.counts.skipped,
        },
        "estimated_time_remaining_ms": report.estimated_time_remaining_ms,
        "recent_errors": [
            {
                "job_id": error.job_id,
                "content_ref": error.content_ref,
                "failure_class": error.failure_class.value if error.failure_class else None,
                "error": error.error,
                "occurred_at": error.occurred_at.isoformat(),
            }
            for error in report.recent_errors
        ],
    }


@contextmanager
def _repository(settings: Settings) -> Iterator[JobQueueRepository]:
    repository = JobQueueRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        lock_ttl_seconds=settings.queue.lock_ttl_seconds,
        busy_timeout_ms=settings.queue.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
