"""Program run state machine rules shared by the store and the run controller."""

from __future__ import annotations

from edu_analyzer.jobs.models import RunCounts, RunStatus

ALLOWED_RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.STOPPED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.PAUSED, RunStatus.STOPPED, RunStatus.COMPLETED, RunStatus.FAILED},
    ),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.STOPPED}),
    RunStatus.STOPPED: frozenset(),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}

STOPPED_BY_USER_ERROR = "Run was stopped by user"


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_RUN_TRANSITIONS[current]


def completion_status(counts: RunCounts) -> RunStatus | None:
    """Terminal status once no job is queued or running, else ``None``.

    Skipped jobs (content unchanged since it was last scored) count as
    successful outcomes.
    """

    if counts.queued or counts.running:
        return None
    if counts.total == 0 or counts.succeeded + counts.skipped > 0:
        return RunStatus.COMPLETED
    return RunStatus.FAILED
