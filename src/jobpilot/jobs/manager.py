"""Job lifecycle: triggering, approval, rejection and reads.

This is the entry point used by the webhook, poller and HTTP API. It owns
the job record's state transitions and hands execution off to the
``ProcessSupervisor`` as detached tasks.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import httpx
import structlog

from jobpilot.errors import JobNotFoundError, PersistenceError, WorktreeError
from jobpilot.jobs import logs
from jobpilot.jobs.decisions import persist_job_analysis
from jobpilot.models import Job, JobSnapshot, JobStatus, make_job_id

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from datetime import datetime
    from pathlib import Path

    from jobpilot.github.client import GitHubClient
    from jobpilot.jobs.cancellation import CancellationRegistry
    from jobpilot.jobs.supervisor import ProcessSupervisor
    from jobpilot.jobs.worktrees import WorkingCopyAllocator
    from jobpilot.models import ConfidenceAssessment, JobDecision
    from jobpilot.notifications import SlackNotifier
    from jobpilot.store import JobStore

logger = structlog.get_logger()

APPROVAL_MESSAGE = "Approved. Continue with the plan."
CANCEL_COMMENT = "Job cancelled via jobpilot."


@dataclass(frozen=True)
class TriggerResult:
    """Outcome of a trigger request."""

    outcome: Literal["triggered", "skipped", "failed"]
    job_id: str | None = None
    reason: str | None = None

    @classmethod
    def triggered(cls, job_id: str) -> TriggerResult:
        return cls("triggered", job_id=job_id)

    @classmethod
    def skipped(cls, reason: str) -> TriggerResult:
        return cls("skipped", reason=reason)

    @classmethod
    def failed(cls, error: str) -> TriggerResult:
        return cls("failed", reason=error)

    @property
    def was_triggered(self) -> bool:
        return self.outcome == "triggered"

    @property
    def description(self) -> str:
        if self.outcome == "triggered":
            return f"Job {self.job_id} triggered successfully"
        if self.outcome == "skipped":
            return f"Job skipped: {self.reason}"
        return f"Job failed: {self.reason}"


class JobManager:
    """Owns job records and their transitions."""

    def __init__(
        self,
        store: JobStore,
        allocator: WorkingCopyAllocator,
        supervisor: ProcessSupervisor,
        cancellation: CancellationRegistry,
        *,
        logs_dir: Path,
        repo_map: dict[str, str],
        github: GitHubClient | None = None,
        notifier: SlackNotifier | None = None,
    ) -> None:
        self._store = store
        self._allocator = allocator
        self._supervisor = supervisor
        self._cancellation = cancellation
        self._logs_dir = logs_dir
        self._repo_map = repo_map
        self._github = github
        self._notifier = notifier
        self._trigger_lock = asyncio.Lock()
        self._reserved: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def repo_map(self) -> dict[str, str]:
        return self._repo_map

    @property
    def allocator(self) -> WorkingCopyAllocator:
        return self._allocator

    # -- triggering ----------------------------------------------------------

    async def trigger(
        self,
        repo: str,
        issue_num: int,
        issue_title: str,
        command: str,
        label: str | None = None,
    ) -> TriggerResult:
        """Record a pending job and start it in the background.

        Returns once the job is persisted. A second trigger is skipped while
        the job is pending, running or being resumed, or while its agent
        process is still alive.
        """
        job_id = make_job_id(repo, issue_num, command)

        async with self._trigger_lock:
            if job_id in self._reserved:
                return self._skip(job_id)
            try:
                if await self._is_busy(job_id):
                    return self._skip(job_id)
            except PersistenceError as e:
                logger.error("job.trigger.check_failed", job_id=job_id, error=str(e))
                return TriggerResult.failed(f"Failed to check job status: {e}")
            self._reserved.add(job_id)

        try:
            job = await self._create_job(job_id, repo, issue_num, issue_title, command)
        except _TriggerFailure as e:
            return TriggerResult.failed(str(e))
        finally:
            self._reserved.discard(job_id)

        self._cancellation.clear(job_id)
        logger.info("job.trigger.started", job_id=job_id, path=job.local_path, command=command)

        if label and self._github is not None:
            self._spawn(self._remove_label(repo, issue_num, label))
        self._spawn(self._supervisor.run(job))
        return TriggerResult.triggered(job_id)

    async def _create_job(self, job_id: str, repo: str, issue_num: int, issue_title: str, command: str) -> Job:
        main_repo_path = self._repo_map.get(repo)
        if main_repo_path is None:
            logger.warning("job.trigger.unknown_repo", repo=repo)
            raise _TriggerFailure(
                f"Repository '{repo}' is not configured. Add it to the repository map and restart the server."
            )

        try:
            local_path = await self._allocator.get_or_create(repo, issue_num, main_repo_path)
        except WorktreeError as e:
            logger.warning("job.trigger.worktree_fallback", job_id=job_id, error=str(e), path=main_repo_path)
            local_path = main_repo_path

        job = Job.create(
            repo=repo,
            issue_num=issue_num,
            issue_title=issue_title,
            command=command,
            local_path=local_path,
            logs_dir=self._logs_dir,
        )
        try:
            previous = await self._store.get_job(job_id)
            if previous is not None:
                job.last_error = previous.last_error
                await self._store.delete_decisions_for_job(job_id)
                await self._store.delete_confidence_for_job(job_id)
            return await self._store.save_job(job)
        except PersistenceError as e:
            logger.error("job.trigger.save_failed", job_id=job_id, error=str(e))
            raise _TriggerFailure(f"Failed to save job: {e}") from e

    async def _is_busy(self, job_id: str) -> bool:
        """True while the job is queued, running or resuming, or its agent is alive."""
        if await self._store.job_exists_and_active(job_id):
            return True
        job = await self._store.get_job(job_id)
        if job is not None and job.status == JobStatus.APPROVED_RESUME:
            return True
        return await self._supervisor.is_running(job_id)

    @staticmethod
    def _skip(job_id: str) -> TriggerResult:
        logger.info("job.trigger.skipped", job_id=job_id)
        return TriggerResult.skipped(f"Job {job_id} is already running or pending")

    # -- operator actions ----------------------------------------------------

    async def approve(self, job_id: str) -> Job:
        """Approve a job waiting for sign-off and resume it.

        Raises:
            JobNotFoundError: Unknown job id.
            InvalidStateError: The job is not waiting for approval.
        """
        job = await self.get_job(job_id)
        job = await self._store.transition_job(
            job.id, JobStatus.APPROVED_RESUME, expected=[JobStatus.WAITING_APPROVAL]
        )
        logger.info("job.approved", job_id=job.id)

        if await self._supervisor.is_running(job.id) and await self._supervisor.send_input(job.id, APPROVAL_MESSAGE):
            return await self._store.transition_job(job.id, JobStatus.RUNNING, expected=[JobStatus.APPROVED_RESUME])

        self._spawn(self._supervisor.run(job, resume=True))
        return job

    async def reject(self, job_id: str) -> Job:
        """Cancel a pending, running or waiting job.

        Raises:
            JobNotFoundError: Unknown job id.
            InvalidStateError: The job is in any other status.
        """
        job = await self.get_job(job_id)
        job = await self._store.transition_job(
            job.id,
            JobStatus.REJECTED,
            expected=[JobStatus.PENDING, JobStatus.RUNNING, JobStatus.WAITING_APPROVAL],
        )
        self._cancellation.cancel(job.id)
        await self._supervisor.terminate(job.id)
        self._cancellation.clear(job.id)
        logger.info("job.rejected", job_id=job.id)

        if self._github is not None:
            self._spawn(self._close_issue(job))
        if self._notifier is not None:
            self._spawn(asyncio.to_thread(self._notifier.post_job_event, job, "cancelled", None))
        return job

    async def block(self, job_id: str, reason: str) -> Job:
        """Park a non-terminal job whose external precondition is unmet."""
        job = await self.get_job(job_id)
        job = await self._store.transition_job(job.id, JobStatus.BLOCKED, error=reason)
        await self._supervisor.terminate(job.id)
        logger.info("job.blocked", job_id=job.id, reason=reason)
        return job

    async def send_input(self, job_id: str, text: str) -> bool:
        job = await self.get_job(job_id)
        return await self._supervisor.send_input(job.id, text)

    # -- reads ---------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get_job_fuzzy(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self) -> list[JobSnapshot]:
        return [JobSnapshot.from_job(job) for job in await self._store.get_all_jobs()]

    async def sync_jobs(self, since: datetime | None = None) -> list[JobSnapshot]:
        """Jobs changed after ``since``; every recent job when it is None."""
        if since is None:
            return await self.list_jobs()
        return [JobSnapshot.from_job(job) for job in await self._store.get_jobs_updated_since(since)]

    async def get_decisions(self, job_id: str) -> list[JobDecision]:
        job = await self._analysed(job_id)
        return await self._store.get_decisions_for_job(job.id)

    async def get_confidence(self, job_id: str) -> ConfidenceAssessment | None:
        job = await self._analysed(job_id)
        return await self._store.get_confidence_for_job(job.id)

    async def read_logs(self, job_id: str, tail: int | None = None) -> dict:
        job = await self.get_job(job_id)
        if tail is not None:
            content = "\n".join(logs.read_log_tail(job.log_path, tail))
        else:
            content = logs.read_log(job.log_path)
        summary = logs.parse_summary(job.log_path)
        return {
            "job": JobSnapshot.from_job(job).model_dump(mode="json"),
            "logs": content,
            "summary": {
                "result": summary.result,
                "pr_url": summary.pr_url,
                "duration": summary.duration_formatted,
                "cost": summary.cost_formatted,
                "turns": summary.turns,
                "is_complete": summary.is_complete,
                "error": summary.error,
            },
            "activity": logs.recent_activity(job.log_path),
        }

    async def _analysed(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if job.status == JobStatus.COMPLETED:
            await persist_job_analysis(self._store, job)
        return job

    # -- background work -----------------------------------------------------

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop background tasks and kill live agents.

        Their jobs stay ``running`` in the store; startup recovery marks them
        interrupted on the next boot.
        """
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for job_id in await self._supervisor.running_jobs():
            await self._supervisor.terminate(job_id)

    async def _remove_label(self, repo: str, issue_num: int, label: str) -> None:
        try:
            await self._github.remove_label(repo, issue_num, label)
        except httpx.HTTPError as e:
            logger.warning("job.label_remove_failed", repo=repo, issue_num=issue_num, label=label, error=str(e))

    async def _close_issue(self, job: Job) -> None:
        try:
            await self._github.close_issue(job.repo, job.issue_num, CANCEL_COMMENT)
        except httpx.HTTPError as e:
            logger.warning("job.issue_close_failed", repo=job.repo, issue_num=job.issue_num, error=str(e))


class _TriggerFailure(Exception):
    pass
