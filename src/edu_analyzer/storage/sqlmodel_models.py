"""SQLModel ORM tables for the analysis pipeline."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"
ACTIVE_RUN_STATUSES_SQL = "status IN ('queued', 'running', 'paused')"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContentItem(SQLModel, table=True):
    __tablename__ = "content_items"  # type: ignore[bad-override]

    content_ref: str = Field(primary_key=True)
    owner_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    title: str | None = None
    source_url: str | None = None
    body: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    content_hash: str | None = Field(default=None, index=True)
    last_fetched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScoringCriterion(SQLModel, table=True):
    __tablename__ = "scoring_criteria"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "configuration_id",
            "name",
            name="uq_scoring_criteria_configuration_name",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    configuration_id: str = Field(index=True)
    name: str
    prompt_template: str = Field(sa_column=Column(Text, nullable=False))
    display_order: int = 0
    is_active: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProgramRun(SQLModel, table=True):
    __tablename__ = "program_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_program_runs_owner_target_active",
            "owner_id",
            "target_id",
            unique=True,
            sqlite_where=text(ACTIVE_RUN_STATUSES_SQL),
        ),
    )

    run_id: str = Field(primary_key=True)
    owner_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    target_id: str = Field(index=True)
    status: str = Field(index=True)
    configuration_id: str | None = None
    total_units: int = 0
    queued_count: int = 0
    running_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    max_concurrency: int = 1
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_analysis_jobs_claim", "status", "run_id", "created_at"),
        Index("idx_analysis_jobs_locks", "status", "locked_at"),
    )

    job_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("program_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    content_ref: str = Field(index=True)
    status: str
    attempt_count: int = 0
    max_attempts: int = 3
    lock_owner: str | None = None
    locked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_failure_class: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AnalysisJobEvent(SQLModel, table=True):
    __tablename__ = "analysis_job_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_analysis_job_events_job_time", "job_id", "created_at"),
        Index("idx_analysis_job_events_run_time", "run_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("analysis_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    run_id: str
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Analysis(SQLModel, table=True):
    __tablename__ = "analyses"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_analyses_content_hash", "content_ref", "content_hash"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("analysis_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    run_id: str = Field(index=True)
    content_ref: str
    content_hash: str
    configuration_id: str | None = None
    results_json: str = Field(sa_column=Column(Text, nullable=False))
    provider: str
    model: str
    duration_ms: int = 0
    tokens_used: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
