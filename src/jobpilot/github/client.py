"""GitHub REST client."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx
import structlog

if TYPE_CHECKING:
    from jobpilot.config import Settings

logger = structlog.get_logger()


class GitHubClient:
    """Thin async wrapper over the few issue endpoints jobpilot needs."""

    API_URL = "https://api.github.com"

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._token = settings.github_token
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(base_url=self.API_URL, transport=self._transport) as client:
            response = await client.request(
                method,
                path,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
                timeout=30.0,
                **kwargs,
            )
        response.raise_for_status()
        return response

    async def post_comment(self, repo: str, number: int, body: str) -> None:
        await self._request("POST", f"/repos/{repo}/issues/{number}/comments", json={"body": body})

    async def close_issue(self, repo: str, number: int, comment: str | None = None) -> None:
        """Close an issue, leaving ``comment`` on it first."""
        if comment:
            await self.post_comment(repo, number, comment)
        await self._request("PATCH", f"/repos/{repo}/issues/{number}", json={"state": "closed"})
        logger.info("github.issue_closed", repo=repo, number=number)

    async def remove_label(self, repo: str, number: int, label: str) -> None:
        """Remove a label; a label that is already gone is not an error."""
        try:
            await self._request("DELETE", f"/repos/{repo}/issues/{number}/labels/{quote(label, safe='')}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                raise
        logger.info("github.label_removed", repo=repo, number=number, label=label)

    async def list_issues_with_label(self, repo: str, label: str) -> list[dict]:
        """Open issues (not pull requests) carrying ``label``, as number/title dicts."""
        response = await self._request(
            "GET",
            f"/repos/{repo}/issues",
            params={"labels": label, "state": "open", "per_page": 100},
        )
        return [
            {"number": item["number"], "title": item.get("title", "")}
            for item in response.json()
            if "pull_request" not in item
        ]
