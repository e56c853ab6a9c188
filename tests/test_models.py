"""Tests for database models."""

from __future__ import annotations

import pytest


def test_job_id_from_repo_issue_and_command():
    """Job ids use the repo name without its owner."""
    from jobpilot.models import make_issue_key, make_job_id

    assert make_job_id("org/repo", 42, "fix") == "repo-42-fix"
    assert make_job_id("repo", 7, "plan-headless") == "repo-7-plan-headless"
    assert make_issue_key("org/repo", 42) == "repo-42"


def test_job_create_defaults(tmp_path):
    """A new job is pending with a log under the logs dir."""
    from jobpilot.models import Job, JobStatus

    job = Job.create(
        repo="org/repo",
        issue_num=42,
        issue_title="Fix bug",
        command="fix",
        local_path="/work/repo",
        logs_dir=tmp_path,
    )
    assert job.id == "repo-42-fix"
    assert job.repo_slug == "repo"
    assert job.status == JobStatus.PENDING
    assert job.log_path == str(tmp_path / "job_repo-42-fix.log")
    assert job.error is None
    assert job.completed_at is None
    assert job.created_at.tzinfo is not None


def test_job_status_values():
    """All lifecycle statuses exist."""
    from jobpilot.models import JobStatus

    expected = {
        "pending", "running", "waiting_approval", "approved_resume", "blocked",
        "completed", "failed", "rejected", "interrupted",
    }
    assert {s.value for s in JobStatus} == expected


def test_status_helpers():
    """Terminal, active and attention groupings."""
    from jobpilot.models import JobStatus

    assert {s for s in JobStatus if s.is_terminal} == {
        JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.REJECTED,
    }
    assert {s for s in JobStatus if s.is_active} == {JobStatus.PENDING, JobStatus.RUNNING}
    assert JobStatus.WAITING_APPROVAL.needs_attention
    assert JobStatus.BLOCKED.needs_attention
    assert not JobStatus.RUNNING.needs_attention


@pytest.mark.parametrize(
    ("source", "target", "allowed"),
    [
        ("pending", "running", True),
        ("pending", "rejected", True),
        ("pending", "completed", False),
        ("running", "waiting_approval", True),
        ("running", "interrupted", True),
        ("waiting_approval", "approved_resume", True),
        ("waiting_approval", "running", False),
        ("approved_resume", "running", True),
        ("interrupted", "blocked", True),
        ("interrupted", "running", False),
        ("completed", "running", False),
        ("rejected", "blocked", False),
    ],
)
def test_transition_table(source, target, allowed):
    """Only the documented lifecycle edges are allowed."""
    from jobpilot.models import JobStatus

    assert JobStatus(source).can_transition_to(JobStatus(target)) is allowed


def test_terminal_statuses_have_no_exits():
    """Nothing leaves a terminal status."""
    from jobpilot.models import ALLOWED_TRANSITIONS, JobStatus

    for status in JobStatus:
        if status.is_terminal:
            assert not ALLOWED_TRANSITIONS[status]


def test_every_non_terminal_status_can_block():
    """Any non-terminal job can be parked as blocked."""
    from jobpilot.models import JobStatus

    for status in JobStatus:
        if not status.is_terminal and status != JobStatus.BLOCKED:
            assert status.can_transition_to(JobStatus.BLOCKED)


def test_snapshot_from_job(make_job):
    """The read model carries the listing fields."""
    from jobpilot.models import JobSnapshot

    job = make_job()
    job.cost_usd = 0.5
    snapshot = JobSnapshot.from_job(job)

    assert snapshot.id == "repo-42-fix"
    assert snapshot.issue_title == "Fix bug"
    assert snapshot.cost_usd == 0.5
    assert snapshot.log_path == job.log_path
    assert snapshot.model_dump(mode="json")["status"] == "pending"


def test_short_command():
    """The headless suffix is dropped for display."""
    from jobpilot.models import Job

    job = Job(id="x", repo="o/r", repo_slug="r", issue_num=1, command="plan-headless", local_path=".", log_path="x")
    assert job.short_command == "plan"
