"""Job pipeline errors."""

from __future__ import annotations


class ContentFetchError(Exception):
    """Content could not be loaded; retryable unless access was denied."""

    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


class StoreConflict(Exception):
    """A conditional update matched no row because another worker won the race."""


class RunNotFoundError(LookupError):
    """No program run with the requested id exists."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id!r} not found.")
        self.run_id = run_id


class InvalidRunTransition(Exception):
    """Requested run transition is not allowed from the current status."""

    def __init__(self, run_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot {requested} run {run_id!r}: current status is {current!r}.",
        )
        self.run_id = run_id
        self.current = current
        self.requested = requested


class ActiveRunExistsError(Exception):
    """Owner already has a queued, running or paused run for the same target."""

    def __init__(self, owner_id: str, target_id: str) -> None:
        super().__init__(
            f"An active run already exists for owner={owner_id!r} target={target_id!r}.",
        )
        self.owner_id = owner_id
        self.target_id = target_id
