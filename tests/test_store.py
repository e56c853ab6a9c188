"""Tests for the job store."""

from __future__ import annotations

from datetime import timedelta

import pytest


@pytest.mark.asyncio
async def test_save_and_get_job(store, make_job):
    """Saved jobs come back by id."""
    await store.save_job(make_job())

    job = await store.get_job("repo-42-fix")
    assert job is not None
    assert job.repo == "org/repo"
    assert job.issue_title == "Fix bug"
    assert await store.get_job("missing") is None


@pytest.mark.asyncio
async def test_save_job_replaces(store, make_job):
    """Saving the same id again replaces the record."""
    await store.save_job(make_job(title="First"))
    await store.save_job(make_job(title="Second"))

    jobs = await store.get_all_jobs()
    assert len(jobs) == 1
    assert jobs[0].issue_title == "Second"


@pytest.mark.asyncio
async def test_get_job_fuzzy(store, make_job):
    """A trailing id fragment resolves to the full id."""
    await store.save_job(make_job(command="plan-headless"))

    exact = await store.get_job_fuzzy("repo-42-plan-headless")
    suffix = await store.get_job_fuzzy("42-plan-headless")

    assert exact is not None and exact.id == "repo-42-plan-headless"
    assert suffix is not None and suffix.id == "repo-42-plan-headless"
    assert await store.get_job_fuzzy("99-plan-headless") is None


@pytest.mark.asyncio
async def test_updated_at_strictly_increases(store, make_job):
    """Each status write moves updated_at forward."""
    from jobpilot.models import JobStatus, as_utc

    saved = await store.save_job(make_job())
    first = as_utc(saved.updated_at)
    second = as_utc((await store.update_job_status(saved.id, JobStatus.RUNNING)).updated_at)
    third = as_utc((await store.update_job_status(saved.id, JobStatus.WAITING_APPROVAL)).updated_at)

    assert first < second < third


@pytest.mark.asyncio
async def test_transition_job_valid(store, make_job):
    """Allowed transitions apply along with extra fields."""
    from jobpilot.models import JobStatus

    await store.save_job(make_job())
    job = await store.transition_job("repo-42-fix", JobStatus.RUNNING, full_command="agent fix 42")

    assert job.status == JobStatus.RUNNING
    assert job.full_command == "agent fix 42"
    stored = await store.get_job("repo-42-fix")
    assert stored.full_command == "agent fix 42"


@pytest.mark.asyncio
async def test_transition_job_invalid(store, make_job):
    """Disallowed transitions raise and leave the record untouched."""
    from jobpilot.errors import InvalidStateError
    from jobpilot.models import JobStatus

    await store.save_job(make_job(status=JobStatus.COMPLETED))

    with pytest.raises(InvalidStateError) as exc_info:
        await store.transition_job("repo-42-fix", JobStatus.RUNNING)

    assert exc_info.value.current == "completed"
    assert exc_info.value.requested == "running"
    assert (await store.get_job("repo-42-fix")).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_transition_job_expected_narrows(store, make_job):
    """``expected`` rejects sources the table would otherwise allow."""
    from jobpilot.errors import InvalidStateError
    from jobpilot.models import JobStatus

    await store.save_job(make_job())

    with pytest.raises(InvalidStateError):
        await store.transition_job("repo-42-fix", JobStatus.REJECTED, expected=[JobStatus.RUNNING])


@pytest.mark.asyncio
async def test_transition_job_missing(store):
    """Unknown ids raise JobNotFoundError."""
    from jobpilot.errors import JobNotFoundError
    from jobpilot.models import JobStatus

    with pytest.raises(JobNotFoundError):
        await store.transition_job("nope", JobStatus.RUNNING)


@pytest.mark.asyncio
async def test_error_sets_last_error(store, make_job):
    """Recording an error also remembers it as the last error."""
    from jobpilot.models import JobStatus

    await store.save_job(make_job(status=JobStatus.RUNNING))
    job = await store.transition_job("repo-42-fix", JobStatus.FAILED, error="Exit code: 1")

    assert job.error == "Exit code: 1"
    assert job.last_error == "Exit code: 1"
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_update_job_completed(store, make_job):
    """Completion records usage figures."""
    from jobpilot.models import JobStatus

    await store.save_job(make_job(status=JobStatus.RUNNING))
    await store.update_job_completed(
        "repo-42-fix", session_id="sess-1", cost_usd=0.42, input_tokens=100, output_tokens=20,
    )

    job = await store.get_job("repo-42-fix")
    assert job.status == JobStatus.COMPLETED
    assert job.session_id == "sess-1"
    assert job.cost_usd == 0.42
    assert job.input_tokens == 100
    assert job.output_tokens == 20


@pytest.mark.asyncio
async def test_update_job_session_keeps_status(store, make_job):
    """Session updates never touch the status."""
    from jobpilot.models import JobStatus

    await store.save_job(make_job(status=JobStatus.WAITING_APPROVAL))
    await store.update_job_session("repo-42-fix", session_id="sess-2")

    job = await store.get_job("repo-42-fix")
    assert job.status == JobStatus.WAITING_APPROVAL
    assert job.session_id == "sess-2"


@pytest.mark.asyncio
async def test_mark_interrupted_jobs(store, make_job):
    """Only running jobs are flipped to interrupted."""
    from jobpilot.models import JobStatus

    await store.save_job(make_job(issue_num=1, status=JobStatus.RUNNING))
    await store.save_job(make_job(issue_num=2, status=JobStatus.RUNNING))
    await store.save_job(make_job(issue_num=3, status=JobStatus.COMPLETED))

    assert await store.mark_interrupted_jobs() == 2
    assert (await store.get_job("repo-1-fix")).status == JobStatus.INTERRUPTED
    assert (await store.get_job("repo-2-fix")).status == JobStatus.INTERRUPTED
    assert (await store.get_job("repo-3-fix")).status == JobStatus.COMPLETED
    assert await store.mark_interrupted_jobs() == 0


@pytest.mark.asyncio
async def test_job_exists_and_active(store, make_job):
    """Pending and running jobs count as active."""
    from jobpilot.models import JobStatus

    await store.save_job(make_job(issue_num=1))
    await store.save_job(make_job(issue_num=2, status=JobStatus.FAILED))

    assert await store.job_exists_and_active("repo-1-fix")
    assert not await store.job_exists_and_active("repo-2-fix")
    assert not await store.job_exists_and_active("repo-3-fix")


@pytest.mark.asyncio
async def test_get_all_jobs_window_and_order(store, make_job):
    """Listing skips old jobs and returns newest first."""
    from jobpilot.models import utc_now

    now = utc_now()
    old = make_job(issue_num=1)
    old.created_at = now - timedelta(days=40)
    older = make_job(issue_num=2)
    older.created_at = now - timedelta(days=2)
    newer = make_job(issue_num=3)
    newer.created_at = now - timedelta(hours=1)
    for job in (old, older, newer):
        await store.save_job(job)

    ids = [job.id for job in await store.get_all_jobs()]
    assert ids == ["repo-3-fix", "repo-2-fix"]


@pytest.mark.asyncio
async def test_get_jobs_updated_since(store, make_job):
    """Sync returns only jobs touched after the cursor."""
    from jobpilot.models import JobStatus, as_utc

    first = await store.save_job(make_job(issue_num=1))
    await store.save_job(make_job(issue_num=2))
    cursor = as_utc((await store.get_job("repo-2-fix")).updated_at)
    await store.update_job_status(first.id, JobStatus.RUNNING)

    changed = await store.get_jobs_updated_since(cursor)
    assert [job.id for job in changed] == ["repo-1-fix"]


@pytest.mark.asyncio
async def test_get_jobs_for_issue(store, make_job):
    """Jobs are grouped per repo and issue."""
    await store.save_job(make_job(command="plan"))
    await store.save_job(make_job(command="fix"))
    await store.save_job(make_job(issue_num=7))

    jobs = await store.get_jobs_for_issue("org/repo", 42)
    assert {job.id for job in jobs} == {"repo-42-plan", "repo-42-fix"}


@pytest.mark.asyncio
async def test_save_decisions_dedupes(store, make_job):
    """Decisions with the same normalized action are stored once."""
    from jobpilot.models import JobDecision

    await store.save_job(make_job())
    first = [
        JobDecision(job_id="", action="Use SQLite", reasoning="simple"),
        JobDecision(job_id="", action="use   sqlite ", reasoning="again"),
    ]
    assert await store.save_decisions("repo-42-fix", first) == 1

    second = [
        JobDecision(job_id="", action="USE SQLITE", reasoning="dup"),
        JobDecision(job_id="", action="Add retries", reasoning="flaky network"),
    ]
    assert await store.save_decisions("repo-42-fix", second) == 1

    actions = [d.action for d in await store.get_decisions_for_job("repo-42-fix")]
    assert actions == ["Use SQLite", "Add retries"]


@pytest.mark.asyncio
async def test_delete_decisions(store, make_job):
    """Deleting decisions clears only that job."""
    from jobpilot.models import JobDecision

    await store.save_job(make_job(issue_num=1))
    await store.save_job(make_job(issue_num=2))
    await store.save_decisions("repo-1-fix", [JobDecision(job_id="", action="A", reasoning="r")])
    await store.save_decisions("repo-2-fix", [JobDecision(job_id="", action="B", reasoning="r")])

    await store.delete_decisions_for_job("repo-1-fix")

    assert await store.get_decisions_for_job("repo-1-fix") == []
    assert len(await store.get_decisions_for_job("repo-2-fix")) == 1


@pytest.mark.asyncio
async def test_save_confidence_upserts(store, make_job):
    """A job keeps a single confidence record."""
    from jobpilot.models import ConfidenceAssessment

    await store.save_job(make_job())
    await store.save_confidence(
        ConfidenceAssessment(job_id="repo-42-fix", score=60, assessment="medium", reasoning="first", risks=["a"])
    )
    await store.save_confidence(
        ConfidenceAssessment(job_id="repo-42-fix", score=90, assessment="high", reasoning="second", risks=None)
    )

    confidence = await store.get_confidence_for_job("repo-42-fix")
    assert confidence.score == 90
    assert confidence.reasoning == "second"
    assert confidence.risks is None

    await store.delete_confidence_for_job("repo-42-fix")
    assert await store.get_confidence_for_job("repo-42-fix") is None


@pytest.mark.asyncio
async def test_worktree_records(store):
    """Working copy records round-trip by issue key."""
    from jobpilot.models import WorkingCopy

    await store.save_worktree(
        WorkingCopy(issue_key="repo-42", path="/wt/repo-issue-42", repo="org/repo", issue_num=42, branch="b")
    )

    stored = await store.get_worktree("repo-42")
    assert stored.path == "/wt/repo-issue-42"
    assert len(await store.get_all_worktrees()) == 1

    await store.delete_worktree("repo-42")
    assert await store.get_worktree("repo-42") is None
    await store.delete_worktree("repo-42")
