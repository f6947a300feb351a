"""CLI entrypoint for edu-analyzer."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from edu_analyzer import __version__
from edu_analyzer.jobs.controllers import (
    AnalyzerCliController,
    ContentAddCommand,
    CriteriaSetCommand,
    CriteriaShowCommand,
    DbUpgradeCommand,
    RunCreateCommand,
    RunListCommand,
    RunMutateCommand,
    RunStatusCommand,
    WorkerCommand,
)
from edu_analyzer.jobs.errors import ActiveRunExistsError, InvalidRunTransition, RunNotFoundError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AnalyzerCliController()
RUN_STATUSES = ["queued", "running", "paused", "stopped", "completed", "failed"]


@click.group()
@click.version_option(version=__version__, prog_name="edu-analyzer")
def edu_analyzer() -> None:
    """Educational content analysis pipeline CLI."""

    level = os.getenv("EDU_ANALYZER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@edu_analyzer.group()
def db() -> None:
    """Database commands."""


@db.command("upgrade")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def db_upgrade(db_path: Path | None) -> None:
    """Apply schema migrations."""

    _emit_lines(_call(lambda: CONTROLLER.upgrade_db(DbUpgradeCommand(db_path=db_path))))


@edu_analyzer.group()
def content() -> None:
    """Content item commands."""


@content.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--ref", "content_ref", required=True, help="Content reference (lesson id).")
@click.option("--title", default=None, help="Optional title.")
@click.option("--url", "source_url", default=None, help="Source URL to fetch at analysis time.")
@click.option(
    "--body-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Text or markdown file with the lesson body.",
)
def content_add(
    db_path: Path | None,
    content_ref: str,
    title: str | None,
    source_url: str | None,
    body_file: Path | None,
) -> None:
    """Create or update a content item."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.add_content(
                ContentAddCommand(
                    db_path=db_path,
                    content_ref=content_ref,
                    title=title,
                    source_url=source_url,
                    body_file=body_file,
                ),
            ),
        ),
    )


@edu_analyzer.group()
def criteria() -> None:
    """Scoring criteria commands."""


@criteria.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--configuration", "configuration_id", required=True, help="Configuration id.")
@click.argument("criteria_file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def criteria_set(db_path: Path | None, configuration_id: str, criteria_file: Path) -> None:
    """Replace the criteria of a configuration from a JSON file."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.set_criteria(
                CriteriaSetCommand(
                    db_path=db_path,
                    configuration_id=configuration_id,
                    criteria_file=criteria_file,
                ),
            ),
        ),
    )


@criteria.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--configuration", "configuration_id", default=None, help="Configuration id.")
def criteria_show(db_path: Path | None, configuration_id: str | None) -> None:
    """Show active criteria (built-in defaults without a configuration)."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.show_criteria(
                CriteriaShowCommand(db_path=db_path, configuration_id=configuration_id),
            ),
        ),
    )


@edu_analyzer.group()
def runs() -> None:
    """Program run commands."""


@runs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--target", "target_id", required=True, help="Program (target) id.")
@click.option("--ref", "content_refs", multiple=True, help="Content ref to analyze (repeatable).")
@click.option("--configuration", "configuration_id", default=None, help="Criteria configuration.")
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1, max=10),
    default=3,
    show_default=True,
    help="Jobs of this run executed at once.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=10),
    default=None,
    help="Attempts per job (defaults to EDU_ANALYZER_MAX_ATTEMPTS).",
)
def runs_create(  # noqa: PLR0913
    db_path: Path | None,
    target_id: str,
    content_refs: tuple[str, ...],
    configuration_id: str | None,
    max_concurrency: int,
    max_attempts: int | None,
) -> None:
    """Create a run with one job per content item not yet scored."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.create_run(
                RunCreateCommand(
                    db_path=db_path,
                    target_id=target_id,
                    content_refs=content_refs,
                    configuration_id=configuration_id,
                    max_concurrency=max_concurrency,
                    max_attempts=max_attempts,
                ),
            ),
        ),
    )


@runs.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("run_id")
def runs_pause(db_path: Path | None, run_id: str) -> None:
    """Pause a running run."""

    _emit_lines(
        _call(lambda: CONTROLLER.pause_run(RunMutateCommand(db_path=db_path, run_id=run_id))),
    )


@runs.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("run_id")
def runs_resume(db_path: Path | None, run_id: str) -> None:
    """Resume a paused run."""

    _emit_lines(
        _call(lambda: CONTROLLER.resume_run(RunMutateCommand(db_path=db_path, run_id=run_id))),
    )


@runs.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("run_id")
def runs_stop(db_path: Path | None, run_id: str) -> None:
    """Stop a run and fail its queued jobs."""

    _emit_lines(
        _call(lambda: CONTROLLER.stop_run(RunMutateCommand(db_path=db_path, run_id=run_id))),
    )


@runs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.argument("run_id")
def runs_status(db_path: Path | None, output_format: str, run_id: str) -> None:
    """Show run progress, estimated time remaining and recent errors."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.run_status(
                RunStatusCommand(
                    db_path=db_path,
                    run_id=run_id,
                    output_format=output_format.lower(),
                ),
            ),
        ),
    )


@runs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--target", "target_id", default=None, help="Optional target filter.")
@click.option(
    "--status",
    type=click.Choice(RUN_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max runs to print.",
)
def runs_list(db_path: Path | None, target_id: str | None, status: str | None, limit: int) -> None:
    """List recent runs."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.list_runs(
                RunListCommand(
                    db_path=db_path,
                    target_id=target_id,
                    status=status.lower() if status else None,
                    limit=limit,
                ),
            ),
        ),
    )


@edu_analyzer.group()
def worker() -> None:
    """Job execution commands."""


@worker.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1, max=50),
    default=3,
    show_default=True,
    help="Jobs claimed and executed in this tick.",
)
@click.option("--run-id", default=None, help="Only process jobs of this run.")
def worker_tick(db_path: Path | None, max_concurrency: int, run_id: str | None) -> None:
    """Run one scheduling tick."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(db_path=db_path, max_concurrency=max_concurrency, run_id=run_id),
            ),
        ),
    )


@worker.command("loop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1, max=50),
    default=3,
    show_default=True,
    help="Jobs claimed and executed per tick.",
)
@click.option("--run-id", default=None, help="Only process jobs of this run.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for ticks.",
)
@click.option(
    "--max-idle-ticks",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive idle ticks before exiting.",
)
def worker_loop(  # noqa: PLR0913
    db_path: Path | None,
    max_concurrency: int,
    run_id: str | None,
    max_ticks: int | None,
    max_idle_ticks: int,
) -> None:
    """Tick repeatedly until the queue is idle or a stop signal arrives."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    max_concurrency=max_concurrency,
                    run_id=run_id,
                    loop=True,
                    max_ticks=max_ticks,
                    max_idle_ticks=max_idle_ticks,
                ),
            ),
        ),
    )


def _call(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, RunNotFoundError, InvalidRunTransition, ActiveRunExistsError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    edu_analyzer()
