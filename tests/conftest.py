"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import shlex
import sys
import textwrap

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Point every setting at the test's temp dir and keep integrations off."""
    monkeypatch.setenv("GITHUB_TOKEN", "")
    monkeypatch.setenv("SLACK_BOT_TOKEN", "")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "")
    monkeypatch.delenv("GITHUB_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("JOBPILOT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("JOBPILOT_WORKTREE_DIR", str(tmp_path / "worktrees"))
    monkeypatch.setenv("JOBPILOT_REPO_MAP", str(tmp_path / "repo_map.json"))
    monkeypatch.setenv("JOBPILOT_POLL_ENABLED", "false")


@pytest.fixture
def store(tmp_path):
    """JobStore over a fresh SQLite file."""
    from jobpilot.db import init_db
    from jobpilot.store import JobStore

    init_db(str(tmp_path / "test.db"))
    return JobStore()


@pytest.fixture
def make_job(tmp_path):
    """Factory for unsaved Job records whose working copy is the temp dir."""

    def _factory(repo="org/repo", issue_num=42, command="fix", title="Fix bug", local_path=None, status=None):
        from jobpilot.models import Job

        job = Job.create(
            repo=repo,
            issue_num=issue_num,
            issue_title=title,
            command=command,
            local_path=str(local_path or tmp_path),
            logs_dir=tmp_path / "logs",
        )
        if status is not None:
            job.status = status
        return job

    return _factory


@pytest.fixture
def agent_script(tmp_path):
    """Write a Python script standing in for the agent CLI; returns its command template."""

    def _factory(source: str, name: str = "agent.py") -> str:
        script = tmp_path / name
        script.write_text(textwrap.dedent(source))
        return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{command}} {{issue_num}}"

    return _factory


async def _wait_until(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def wait_until():
    """Poll an async predicate until it is true."""
    return _wait_until


@pytest.fixture
def client():
    """FastAPI test client with the app lifespan running."""
    from jobpilot.main import app

    with TestClient(app) as test_client:
        yield test_client
