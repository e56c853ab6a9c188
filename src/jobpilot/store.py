"""Durable job store backed by SQLModel.

Every method is a coroutine so callers treat persistence as a suspension
point, but the bodies never await: a single call runs to completion on the
event loop without interleaving, which is what makes ``transition_job`` a
check-and-set.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col, select

from jobpilot.db import get_session
from jobpilot.errors import InvalidStateError, JobNotFoundError, PersistenceError
from jobpilot.models import (
    ConfidenceAssessment,
    Job,
    JobDecision,
    JobStatus,
    WorkingCopy,
    as_utc,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from sqlmodel import Session

logger = structlog.get_logger()

RECENT_JOB_DAYS = 30
RECENT_JOB_LIMIT = 100


def normalize_action(action: str) -> str:
    """Whitespace-collapsed, lower-cased key used to spot duplicate decisions."""
    return re.sub(r"\s+", " ", action).strip().lower()


def _next_timestamp(previous: datetime | None) -> datetime:
    now = utc_now()
    if previous is not None:
        previous = as_utc(previous)
        if now <= previous:
            now = previous + timedelta(microseconds=1)
    return now


class JobStore:
    """Jobs, working copies, decisions and confidence records."""

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with get_session() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

    # -- jobs ----------------------------------------------------------------

    async def save_job(self, job: Job) -> Job:
        """Insert or replace a job record."""
        with self._session() as session:
            existing = session.get(Job, job.id)
            if existing is not None:
                job.updated_at = _next_timestamp(existing.updated_at)
            merged = session.merge(job)
            session.commit()
            session.refresh(merged)
            return merged

    async def get_job(self, job_id: str) -> Job | None:
        with self._session() as session:
            return session.get(Job, job_id)

    async def get_job_fuzzy(self, job_id: str) -> Job | None:
        """Exact id match, else the newest job whose id ends with ``-<job_id>``."""
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is not None:
                return job
            stmt = (
                select(Job)
                .where(col(Job.id).endswith(f"-{job_id}"))
                .order_by(col(Job.created_at).desc())
            )
            return session.exec(stmt).first()

    async def get_all_jobs(self, *, days: int = RECENT_JOB_DAYS, limit: int = RECENT_JOB_LIMIT) -> list[Job]:
        """Jobs created in the last ``days`` days, newest first."""
        cutoff = utc_now() - timedelta(days=days)
        with self._session() as session:
            stmt = (
                select(Job)
                .where(Job.created_at >= cutoff)
                .order_by(col(Job.created_at).desc(), col(Job.id))
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    async def get_jobs_updated_since(self, since: datetime) -> list[Job]:
        with self._session() as session:
            stmt = (
                select(Job)
                .where(Job.updated_at > since)
                .order_by(col(Job.updated_at), col(Job.id))
            )
            return list(session.exec(stmt).all())

    async def get_jobs_for_issue(self, repo: str, issue_num: int) -> list[Job]:
        with self._session() as session:
            stmt = (
                select(Job)
                .where(Job.repo == repo, Job.issue_num == issue_num)
                .order_by(col(Job.created_at).desc())
            )
            return list(session.exec(stmt).all())

    async def job_exists_and_active(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        return job is not None and job.status.is_active

    async def update_job_status(self, job_id: str, status: JobStatus, error: str | None = None) -> Job:
        """Unconditionally set a job's status."""
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            self._apply_status(job, status, error)
            session.add(job)
            session.commit()
            return job

    async def transition_job(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Iterable[JobStatus] | None = None,
        error: str | None = None,
        **fields,
    ) -> Job:
        """Move a job to ``status`` if its current status allows it.

        ``expected`` narrows the acceptable source statuses further. Extra
        keyword arguments are written to the record in the same commit.

        Raises:
            JobNotFoundError: No job with that id.
            InvalidStateError: The current status forbids the move.
        """
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            current = job.status
            allowed = current.can_transition_to(status)
            if expected is not None and current not in set(expected):
                allowed = False
            if not allowed:
                raise InvalidStateError(job_id, current.value, status.value)
            for name, value in fields.items():
                setattr(job, name, value)
            self._apply_status(job, status, error)
            session.add(job)
            session.commit()
            logger.debug("store.transition", job_id=job_id, old=current.value, new=status.value)
            return job

    async def update_job_completed(
        self,
        job_id: str,
        *,
        session_id: str | None = None,
        cost_usd: float | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> Job:
        """Record a successful run along with its session and usage figures."""
        return await self.transition_job(
            job_id,
            JobStatus.COMPLETED,
            expected=[JobStatus.RUNNING],
            session_id=session_id,
            cost_usd=cost_usd,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def update_job_session(
        self,
        job_id: str,
        *,
        session_id: str | None = None,
        cost_usd: float | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> Job:
        """Record session and usage figures without changing status."""
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if session_id is not None:
                job.session_id = session_id
            if cost_usd is not None:
                job.cost_usd = cost_usd
            if input_tokens is not None:
                job.input_tokens = input_tokens
            if output_tokens is not None:
                job.output_tokens = output_tokens
            job.updated_at = _next_timestamp(job.updated_at)
            session.add(job)
            session.commit()
            return job

    async def mark_interrupted_jobs(self) -> int:
        """Flip every ``running`` job to ``interrupted``; returns how many changed."""
        with self._session() as session:
            stale = session.exec(select(Job).where(Job.status == JobStatus.RUNNING)).all()
            for job in stale:
                self._apply_status(job, JobStatus.INTERRUPTED, None)
                session.add(job)
            session.commit()
            return len(stale)

    @staticmethod
    def _apply_status(job: Job, status: JobStatus, error: str | None) -> None:
        job.status = status
        if error is not None:
            job.error = error
            job.last_error = error
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            job.completed_at = utc_now()
        job.updated_at = _next_timestamp(job.updated_at)

    # -- decisions / confidence ----------------------------------------------

    async def save_decisions(self, job_id: str, decisions: list[JobDecision]) -> int:
        """Persist decisions not already stored for the job; returns the count saved."""
        with self._session() as session:
            stored = session.exec(select(JobDecision.action).where(JobDecision.job_id == job_id)).all()
            seen = {normalize_action(action) for action in stored}
            saved = 0
            for decision in decisions:
                key = normalize_action(decision.action)
                if key in seen:
                    continue
                seen.add(key)
                decision.job_id = job_id
                session.add(decision)
                saved += 1
            session.commit()
            return saved

    async def get_decisions_for_job(self, job_id: str) -> list[JobDecision]:
        with self._session() as session:
            stmt = (
                select(JobDecision)
                .where(JobDecision.job_id == job_id)
                .order_by(col(JobDecision.timestamp))
            )
            return list(session.exec(stmt).all())

    async def delete_decisions_for_job(self, job_id: str) -> None:
        with self._session() as session:
            for decision in session.exec(select(JobDecision).where(JobDecision.job_id == job_id)).all():
                session.delete(decision)
            session.commit()

    async def save_confidence(self, assessment: ConfidenceAssessment) -> ConfidenceAssessment:
        """Insert or replace the single confidence record for a job."""
        with self._session() as session:
            existing = session.exec(
                select(ConfidenceAssessment).where(ConfidenceAssessment.job_id == assessment.job_id)
            ).first()
            if existing is not None:
                existing.score = assessment.score
                existing.assessment = assessment.assessment
                existing.reasoning = assessment.reasoning
                existing.risks = assessment.risks
                existing.timestamp = assessment.timestamp
                assessment = existing
            session.add(assessment)
            session.commit()
            return assessment

    async def get_confidence_for_job(self, job_id: str) -> ConfidenceAssessment | None:
        with self._session() as session:
            return session.exec(
                select(ConfidenceAssessment).where(ConfidenceAssessment.job_id == job_id)
            ).first()

    async def delete_confidence_for_job(self, job_id: str) -> None:
        with self._session() as session:
            existing = session.exec(
                select(ConfidenceAssessment).where(ConfidenceAssessment.job_id == job_id)
            ).first()
            if existing is not None:
                session.delete(existing)
                session.commit()

    # -- working copies ------------------------------------------------------

    async def get_all_worktrees(self) -> list[WorkingCopy]:
        with self._session() as session:
            return list(session.exec(select(WorkingCopy)).all())

    async def get_worktree(self, issue_key: str) -> WorkingCopy | None:
        with self._session() as session:
            return session.get(WorkingCopy, issue_key)

    async def save_worktree(self, worktree: WorkingCopy) -> WorkingCopy:
        with self._session() as session:
            merged = session.merge(worktree)
            session.commit()
            return merged

    async def delete_worktree(self, issue_key: str) -> None:
        with self._session() as session:
            existing = session.get(WorkingCopy, issue_key)
            if existing is not None:
                session.delete(existing)
                session.commit()
