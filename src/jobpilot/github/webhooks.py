"""GitHub webhook event handlers."""

from __future__ import annotations

import hashlib
import hmac
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, Header, HTTPException, Request

from jobpilot.config import get_settings

if TYPE_CHECKING:
    from jobpilot.jobs.manager import JobManager, TriggerResult

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

COMMAND_LABEL_PREFIX = "cmd:"


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify GitHub webhook signature."""
    if not secret:
        return True  # Skip verification if no secret configured
    expected = "sha256=" + hmac.new(
        secret.encode(), payload, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def command_from_label(label: str) -> str | None:
    if label.startswith(COMMAND_LABEL_PREFIX):
        return label.removeprefix(COMMAND_LABEL_PREFIX) or None
    return None


@router.post("/github")
async def github_webhook(
    request: Request,
    x_hub_signature_256: str = Header(default=""),
    x_github_event: str = Header(default=""),
) -> dict:
    """Handle incoming GitHub webhook events."""
    settings = get_settings()
    payload = await request.body()

    if settings.github_webhook_secret and not verify_signature(
        payload, x_hub_signature_256, settings.github_webhook_secret
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    body = await request.json()

    logger.info("webhook.received", github_event=x_github_event, action=body.get("action"))

    if x_github_event == "issues":
        results = await handle_issue_event(body, request.app.state.manager)
        return {"status": "ok", "results": [r.description for r in results]}

    return {"status": "ok"}


async def handle_issue_event(payload: dict, manager: JobManager) -> list[TriggerResult]:
    """Trigger jobs for ``cmd:`` labels on opened or labeled issues."""
    action = payload.get("action")
    issue = payload.get("issue") or {}
    repo = (payload.get("repository") or {}).get("full_name")

    if action == "labeled":
        labels = [(payload.get("label") or {}).get("name", "")]
    elif action == "opened":
        labels = [label.get("name", "") for label in issue.get("labels", [])]
    else:
        logger.debug("webhook.issue_ignored", action=action, issue_number=issue.get("number"))
        return []

    if not repo or not isinstance(issue.get("number"), int):
        logger.warning("webhook.issue_incomplete", action=action)
        return []

    results = []
    for label in labels:
        command = command_from_label(label)
        if command is None:
            continue
        result = await manager.trigger(repo, issue["number"], issue.get("title", ""), command, label=label)
        logger.info("webhook.trigger", repo=repo, issue_number=issue["number"], result=result.description)
        results.append(result)
    return results
