"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from support import MutableClock

from edu_analyzer.jobs.repository import JobQueueRepository


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: MutableClock) -> Iterator[JobQueueRepository]:
    repo = JobQueueRepository(tmp_path / "queue.db", clock=clock)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
