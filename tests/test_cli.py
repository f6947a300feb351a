from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from edu_analyzer.main import edu_analyzer

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Runs, Criteria & Worker Commands"),
]

PROVIDER_KEY_VARS = (
    "OPENROUTER_API_KEY",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GOOGLE_API_KEY",
    "YANDEX_API_KEY",
    "YANDEX_FOLDER_ID",
)


@pytest.fixture(autouse=True)
def offline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EDU_ANALYZER_DEFAULT_MODEL", "echo")
    monkeypatch.setenv("EDU_ANALYZER_USER_ID", "default_user")
    monkeypatch.setenv("EDU_ANALYZER_LOG_LEVEL", "WARNING")
    monkeypatch.delenv("EDU_ANALYZER_MODELS_FILE", raising=False)
    for name in PROVIDER_KEY_VARS:
        monkeypatch.delenv(name, raising=False)


def _invoke(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(edu_analyzer, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _add_lesson(runner: CliRunner, db_path: Path, tmp_path: Path, ref: str, text: str) -> None:
    body_file = tmp_path / f"{ref}.md"
    body_file.write_text(text, encoding="utf-8")
    output = _invoke(
        runner,
        "content",
        "add",
        "--db-path",
        str(db_path),
        "--ref",
        ref,
        "--body-file",
        str(body_file),
    )
    assert f"content_ref={ref}" in output


def _run_id(output: str) -> str:
    match = re.search(r"run_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_db_upgrade(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    output = _invoke(CliRunner(), "db", "upgrade", "--db-path", str(db_path))
    assert "Database schema is up to date" in output
    assert db_path.exists()


def test_create_run_tick_and_status(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _add_lesson(runner, db_path, tmp_path, "lesson-1", "# Fractions\nHalves and quarters.")
    _add_lesson(runner, db_path, tmp_path, "lesson-2", "# Decimals\nTenths and hundredths.")

    created = _invoke(
        runner,
        "runs",
        "create",
        "--db-path",
        str(db_path),
        "--target",
        "program-1",
        "--ref",
        "lesson-1",
        "--ref",
        "lesson-2",
    )
    run_id = _run_id(created)
    assert "Jobs: 2 queued, 0 skipped as already scored" in created

    tick = _invoke(
        runner,
        "worker",
        "tick",
        "--db-path",
        str(db_path),
        "--max-concurrency",
        "2",
    )
    assert "processed=2" in tick
    assert "succeeded=2" in tick

    status = _invoke(
        runner,
        "runs",
        "status",
        "--db-path",
        str(db_path),
        "--format",
        "json",
        run_id,
    )
    payload = json.loads(status)
    assert payload["status"] == "completed"
    assert payload["counts"]["succeeded"] == 2
    assert payload["estimated_time_remaining_ms"] == 0

    again = _invoke(
        runner,
        "runs",
        "create",
        "--db-path",
        str(db_path),
        "--target",
        "program-1",
        "--ref",
        "lesson-1",
        "--ref",
        "lesson-2",
    )
    assert "status=completed" in again
    assert "Jobs: 0 queued, 2 skipped as already scored" in again

    listed = _invoke(runner, "runs", "list", "--db-path", str(db_path), "--target", "program-1")
    assert "Runs: 2" in listed


def test_pause_resume_stop_commands(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _add_lesson(runner, db_path, tmp_path, "lesson-1", "Body one")

    run_id = _run_id(
        _invoke(
            runner,
            "runs",
            "create",
            "--db-path",
            str(db_path),
            "--target",
            "p",
            "--ref",
            "lesson-1",
        ),
    )

    paused = runner.invoke(edu_analyzer, ["runs", "pause", "--db-path", str(db_path), run_id])
    assert paused.exit_code != 0
    assert "current status is 'queued'" in paused.output

    stopped = _invoke(runner, "runs", "stop", "--db-path", str(db_path), run_id)
    assert f"Run {run_id} stopped: failed=1 running=0" in stopped

    table = _invoke(runner, "runs", "status", "--db-path", str(db_path), run_id)
    assert "status=stopped" in table
    assert "Run was stopped by user" in table

    missing = runner.invoke(edu_analyzer, ["runs", "resume", "--db-path", str(db_path), "nope"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_criteria_set_and_show(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    criteria_file = tmp_path / "criteria.json"
    criteria_file.write_text(
        json.dumps({"clarity": "Rate clarity of {{content}}", "depth": "Rate depth"}),
        encoding="utf-8",
    )

    output = _invoke(
        runner,
        "criteria",
        "set",
        "--db-path",
        str(db_path),
        "--configuration",
        "cfg-1",
        str(criteria_file),
    )
    assert "Configuration cfg-1: 2 active criteria" in output

    shown = _invoke(
        runner,
        "criteria",
        "show",
        "--db-path",
        str(db_path),
        "--configuration",
        "cfg-1",
    )
    assert "0. clarity: Rate clarity of {{content}}" in shown
    assert "1. depth: Rate depth" in shown

    defaults = _invoke(runner, "criteria", "show", "--db-path", str(db_path))
    assert "(default)" in defaults


def test_content_add_requires_body_or_url(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        edu_analyzer,
        ["content", "add", "--db-path", str(tmp_path / "cli.db"), "--ref", "lesson-1"],
    )
    assert result.exit_code != 0
    assert "Either a body file or a source URL is required" in result.output


def test_worker_loop_drains_queue(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    for index in range(3):
        _add_lesson(runner, db_path, tmp_path, f"lesson-{index}", f"Lesson number {index}")
    _invoke(
        runner,
        "runs",
        "create",
        "--db-path",
        str(db_path),
        "--target",
        "p",
        "--ref",
        "lesson-0",
        "--ref",
        "lesson-1",
        "--ref",
        "lesson-2",
        "--max-concurrency",
        "1",
    )

    output = _invoke(
        runner,
        "worker",
        "loop",
        "--db-path",
        str(db_path),
        "--max-concurrency",
        "1",
    )

    assert "Worker summary: ticks=4 idle_ticks=1 processed=3" in output
