"""HTTP routes for listing, triggering and steering jobs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from jobpilot.models import JobSnapshot

if TYPE_CHECKING:
    from jobpilot.jobs.manager import JobManager

logger = structlog.get_logger()

router = APIRouter(prefix="/jobs", tags=["jobs"])


class TriggerRequest(BaseModel):
    repo: str
    issue_num: int
    issue_title: str = ""
    command: str
    cmd_label: str | None = None


class InputRequest(BaseModel):
    text: str


def _manager(request: Request) -> JobManager:
    return request.app.state.manager


@router.get("")
async def list_jobs(request: Request) -> list[JobSnapshot]:
    """Recent jobs, newest first."""
    return await _manager(request).list_jobs()


@router.get("/sync")
async def sync_jobs(request: Request, since: int | None = None) -> dict:
    """Jobs updated after ``since`` (unix seconds)."""
    since_dt = datetime.fromtimestamp(since, UTC) if since is not None else None
    jobs = await _manager(request).sync_jobs(since_dt)
    return {
        "jobs": [job.model_dump(mode="json") for job in jobs],
        "sync_timestamp": int(datetime.now(UTC).timestamp()),
        "total_jobs": len(jobs),
    }


@router.post("/trigger")
async def trigger_job(request: Request, body: TriggerRequest) -> dict:
    logger.info("api.trigger", repo=body.repo, issue_num=body.issue_num, command=body.command)
    result = await _manager(request).trigger(
        body.repo, body.issue_num, body.issue_title, body.command, label=body.cmd_label
    )
    if result.outcome == "skipped":
        raise HTTPException(status_code=409, detail=result.reason)
    if result.outcome == "failed":
        raise HTTPException(status_code=500, detail=result.reason)
    return {
        "status": "triggered",
        "job_id": result.job_id,
        "message": f"Starting {body.command} job for {body.repo}#{body.issue_num}",
    }


@router.get("/{job_id}")
async def get_job(request: Request, job_id: str) -> JobSnapshot:
    return JobSnapshot.from_job(await _manager(request).get_job(job_id))


@router.get("/{job_id}/logs")
async def get_job_logs(request: Request, job_id: str, tail: int | None = None) -> dict:
    return await _manager(request).read_logs(job_id, tail=tail)


@router.post("/{job_id}/approve")
async def approve_job(request: Request, job_id: str) -> dict:
    job = await _manager(request).approve(job_id)
    return {"status": "approved", "job_id": job.id}


@router.post("/{job_id}/reject")
async def reject_job(request: Request, job_id: str) -> dict:
    job = await _manager(request).reject(job_id)
    return {"status": "rejected", "job_id": job.id}


@router.post("/{job_id}/input")
async def send_input(request: Request, job_id: str, body: InputRequest) -> dict:
    sent = await _manager(request).send_input(job_id, body.text)
    return {"sent": sent}


@router.get("/{job_id}/decisions")
async def get_decisions(request: Request, job_id: str) -> list[dict]:
    decisions = await _manager(request).get_decisions(job_id)
    return [decision.model_dump(mode="json") for decision in decisions]


@router.get("/{job_id}/confidence")
async def get_confidence(request: Request, job_id: str) -> dict | None:
    confidence = await _manager(request).get_confidence(job_id)
    return confidence.model_dump(mode="json") if confidence else None
