"""Database models for jobpilot."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def repo_slug(repo: str) -> str:
    """``owner/name`` -> ``name``."""
    return repo.rstrip("/").split("/")[-1] or repo


def make_job_id(repo: str, issue_num: int, command: str) -> str:
    """Deterministic job identity, so re-triggering the same work is idempotent."""
    return f"{repo_slug(repo)}-{issue_num}-{command}"


def make_issue_key(repo: str, issue_num: int) -> str:
    return f"{repo_slug(repo)}-{issue_num}"


class JobStatus(enum.StrEnum):
    """Lifecycle status of a job."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"  # Agent asked for operator sign-off
    APPROVED_RESUME = "approved_resume"
    BLOCKED = "blocked"  # External precondition unmet
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    INTERRUPTED = "interrupted"  # Service restarted mid-run

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Pending or running: a second trigger for the same id is skipped."""
        return self in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def needs_attention(self) -> bool:
        return self in (JobStatus.BLOCKED, JobStatus.FAILED, JobStatus.WAITING_APPROVAL)

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self]


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.REJECTED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.REJECTED, JobStatus.BLOCKED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.WAITING_APPROVAL,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.INTERRUPTED,
        JobStatus.REJECTED,
        JobStatus.BLOCKED,
    }),
    JobStatus.WAITING_APPROVAL: frozenset({JobStatus.APPROVED_RESUME, JobStatus.REJECTED, JobStatus.BLOCKED}),
    JobStatus.APPROVED_RESUME: frozenset({JobStatus.RUNNING, JobStatus.BLOCKED}),
    JobStatus.INTERRUPTED: frozenset({JobStatus.BLOCKED}),
    JobStatus.BLOCKED: frozenset(),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.REJECTED: frozenset(),
}


class Job(SQLModel, table=True):
    """One agent run for a (repository, issue, command) triple."""

    id: str = Field(primary_key=True)
    repo: str = Field(index=True)
    repo_slug: str
    issue_num: int = Field(index=True)
    issue_title: str = Field(default="")
    command: str
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    local_path: str
    log_path: str
    full_command: str = Field(default="")
    error: str | None = Field(default=None)
    last_error: str | None = Field(default=None)
    session_id: str | None = Field(default=None)
    cost_usd: float | None = Field(default=None)
    input_tokens: int | None = Field(default=None)
    output_tokens: int | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = Field(default=None)

    @classmethod
    def create(
        cls,
        *,
        repo: str,
        issue_num: int,
        issue_title: str,
        command: str,
        local_path: str,
        logs_dir: Path,
    ) -> Job:
        job_id = make_job_id(repo, issue_num, command)
        return cls(
            id=job_id,
            repo=repo,
            repo_slug=repo_slug(repo),
            issue_num=issue_num,
            issue_title=issue_title,
            command=command,
            status=JobStatus.PENDING,
            local_path=local_path,
            log_path=str(logs_dir / f"job_{job_id}.log"),
        )

    @property
    def short_command(self) -> str:
        return self.command.replace("-headless", "")


class WorkingCopy(SQLModel, table=True):
    """An isolated git worktree dedicated to one issue."""

    __tablename__ = "working_copy"

    issue_key: str = Field(primary_key=True)
    path: str
    repo: str = Field(index=True)
    issue_num: int
    branch: str
    created_at: datetime = Field(default_factory=utc_now)


class DecisionCategory(enum.StrEnum):
    ARCHITECTURE = "architecture"
    LIBRARY = "library"
    PATTERN = "pattern"
    STORAGE = "storage"
    API = "api"
    TESTING = "testing"
    UI = "ui"
    OTHER = "other"


class JobDecision(SQLModel, table=True):
    """A design choice mined from the agent's output."""

    __tablename__ = "job_decision"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    job_id: str = Field(foreign_key="job.id", index=True)
    action: str
    reasoning: str
    alternatives: list[str] | None = Field(default=None, sa_column=Column(JSON))
    category: DecisionCategory = Field(default=DecisionCategory.OTHER)
    timestamp: datetime = Field(default_factory=utc_now)


class ConfidenceAssessment(SQLModel, table=True):
    """The agent's self-reported confidence for a job; at most one per job."""

    __tablename__ = "confidence_assessment"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    job_id: str = Field(foreign_key="job.id", unique=True, index=True)
    score: int
    assessment: str
    reasoning: str
    risks: list[str] | None = Field(default=None, sa_column=Column(JSON))
    timestamp: datetime = Field(default_factory=utc_now)


class JobSnapshot(BaseModel):
    """Read model handed to listing and sync collaborators."""

    id: str
    repo: str
    issue_num: int
    issue_title: str
    command: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    error: str | None = None
    log_path: str

    @classmethod
    def from_job(cls, job: Job) -> JobSnapshot:
        return cls(
            id=job.id,
            repo=job.repo,
            issue_num=job.issue_num,
            issue_title=job.issue_title,
            command=job.command,
            status=job.status,
            created_at=as_utc(job.created_at),
            updated_at=as_utc(job.updated_at),
            completed_at=as_utc(job.completed_at) if job.completed_at else None,
            cost_usd=job.cost_usd,
            input_tokens=job.input_tokens,
            output_tokens=job.output_tokens,
            error=job.error,
            log_path=job.log_path,
        )
