"""Tests for webhook handling."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest


class FakeManager:
    def __init__(self):
        self.calls = []

    async def trigger(self, repo, issue_num, issue_title, command, label=None):
        from jobpilot.jobs.manager import TriggerResult
        from jobpilot.models import make_job_id

        self.calls.append((repo, issue_num, issue_title, command, label))
        return TriggerResult.triggered(make_job_id(repo, issue_num, command))


def _issue_payload(action="labeled", label="cmd:plan-headless", labels=()):
    return {
        "action": action,
        "label": {"name": label},
        "issue": {"number": 42, "title": "Fix bug", "labels": [{"name": name} for name in labels]},
        "repository": {"full_name": "org/repo"},
    }


def test_verify_signature():
    """Signatures are HMAC-SHA256 of the raw body."""
    from jobpilot.github.webhooks import verify_signature

    body = b'{"action": "ping"}'
    good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    assert verify_signature(body, good, "s3cret")
    assert not verify_signature(body, "sha256=invalid", "s3cret")
    assert verify_signature(body, "", "")


def test_command_from_label():
    """Only cmd: labels name a command."""
    from jobpilot.github.webhooks import command_from_label

    assert command_from_label("cmd:plan-headless") == "plan-headless"
    assert command_from_label("bug") is None
    assert command_from_label("cmd:") is None


def test_webhook_ping(client):
    """Ping events return 200."""
    response = client.post(
        "/webhooks/github",
        json={"zen": "Keep it logically awesome."},
        headers={"X-GitHub-Event": "ping"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_webhook_signature_verification(client, monkeypatch):
    """Webhook rejects requests with invalid signatures when secret is set."""
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", "test-secret")

    response = client.post(
        "/webhooks/github",
        json={"action": "ping"},
        headers={
            "X-GitHub-Event": "ping",
            "X-Hub-Signature-256": "sha256=invalid",
        },
    )
    assert response.status_code == 401


def test_webhook_valid_signature_triggers(client, monkeypatch):
    """A correctly signed labeled event triggers the labeled command."""
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", "test-secret")
    manager = FakeManager()
    client.app.state.manager = manager

    body = json.dumps(_issue_payload()).encode()
    signature = "sha256=" + hmac.new(b"test-secret", body, hashlib.sha256).hexdigest()
    response = client.post(
        "/webhooks/github",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-GitHub-Event": "issues",
            "X-Hub-Signature-256": signature,
        },
    )

    assert response.status_code == 200
    assert response.json()["results"] == ["Job repo-42-plan-headless triggered successfully"]
    assert manager.calls == [("org/repo", 42, "Fix bug", "plan-headless", "cmd:plan-headless")]


def test_webhook_other_issue_actions_ignored(client):
    """Issue actions other than opened/labeled trigger nothing."""
    manager = FakeManager()
    client.app.state.manager = manager

    response = client.post(
        "/webhooks/github",
        json=_issue_payload(action="assigned"),
        headers={"X-GitHub-Event": "issues"},
    )

    assert response.status_code == 200
    assert response.json()["results"] == []
    assert manager.calls == []


@pytest.mark.asyncio
async def test_opened_issue_triggers_each_command_label():
    """An issue opened with several labels triggers each cmd: label."""
    from jobpilot.github.webhooks import handle_issue_event

    manager = FakeManager()
    payload = _issue_payload(action="opened", labels=["bug", "cmd:plan-headless", "cmd:implement-headless"])

    results = await handle_issue_event(payload, manager)

    assert [r.job_id for r in results] == ["repo-42-plan-headless", "repo-42-implement-headless"]


@pytest.mark.asyncio
async def test_non_command_label_ignored():
    """Plain labels do not trigger jobs."""
    from jobpilot.github.webhooks import handle_issue_event

    manager = FakeManager()
    assert await handle_issue_event(_issue_payload(label="bug"), manager) == []
    assert manager.calls == []


@pytest.mark.asyncio
async def test_incomplete_payload_ignored():
    """Payloads without a repository or issue number are dropped."""
    from jobpilot.github.webhooks import handle_issue_event

    manager = FakeManager()
    payload = _issue_payload()
    del payload["repository"]

    assert await handle_issue_event(payload, manager) == []
