"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jobpilot import api
from jobpilot.config import get_settings, load_repo_map
from jobpilot.db import init_db
from jobpilot.errors import InvalidStateError, JobNotFoundError, PersistenceError
from jobpilot.github import webhooks

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = structlog.get_logger()

VERSION = "0.1.0"


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application startup and shutdown."""
    from jobpilot.github.client import GitHubClient
    from jobpilot.github.poller import GitHubPoller
    from jobpilot.jobs.cancellation import CancellationRegistry
    from jobpilot.jobs.manager import JobManager
    from jobpilot.jobs.recovery import recover_interrupted_jobs
    from jobpilot.jobs.supervisor import ProcessSupervisor
    from jobpilot.jobs.worktrees import WorkingCopyAllocator
    from jobpilot.notifications import SlackNotifier, create_slack_app
    from jobpilot.store import JobStore

    settings = get_settings()
    configure_logging(settings.jobpilot_log_level)
    logger.info("jobpilot.starting", data_dir=str(settings.jobpilot_data_dir))

    settings.jobpilot_data_dir.mkdir(parents=True, exist_ok=True)
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    settings.jobpilot_worktree_dir.mkdir(parents=True, exist_ok=True)

    init_db(str(settings.database_path))
    logger.info("jobpilot.db_initialized", path=str(settings.database_path))

    store = JobStore()

    # Nothing may trigger before stale running jobs are settled
    try:
        await recover_interrupted_jobs(store)
    except PersistenceError:
        logger.exception("jobpilot.recovery_failed")
        raise

    repo_map = load_repo_map(settings.jobpilot_repo_map)
    allocator = WorkingCopyAllocator(store, settings.jobpilot_worktree_dir, repo_map)
    await allocator.load_from_persistence()

    notifier = SlackNotifier(create_slack_app(settings), settings.slack_notify_channel)
    github = GitHubClient(settings)
    cancellation = CancellationRegistry()
    supervisor = ProcessSupervisor(
        store,
        cancellation,
        command_template=settings.jobpilot_agent_command,
        extra_paths=settings.jobpilot_extra_paths,
        grace_seconds=settings.jobpilot_terminate_grace_seconds,
        notifier=notifier,
    )
    manager = JobManager(
        store,
        allocator,
        supervisor,
        cancellation,
        logs_dir=settings.logs_dir,
        repo_map=repo_map,
        github=github if github.configured else None,
        notifier=notifier,
    )
    app.state.manager = manager

    poller = None
    poller_task: asyncio.Task | None = None
    if settings.jobpilot_poll_enabled and github.configured and repo_map:
        poller = GitHubPoller(
            settings,
            github,
            repo_map=repo_map,
            on_trigger=manager.trigger,
            on_cleanup=lambda: allocator.cleanup_old(settings.jobpilot_worktree_max_age_days),
        )
        poller_task = asyncio.create_task(poller.start())
        logger.info("jobpilot.poller_started", interval=settings.jobpilot_poll_interval)
    else:
        logger.warning("jobpilot.poller_disabled")

    yield

    # Shutdown
    if poller:
        poller.stop()
    if poller_task:
        poller_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller_task
    await manager.shutdown()
    logger.info("jobpilot.shutdown")


app = FastAPI(
    title="jobpilot",
    description="Runs coding-agent CLI jobs for GitHub issues",
    version=VERSION,
    lifespan=lifespan,
)
app.include_router(api.router)
app.include_router(webhooks.router)


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "version": VERSION}
