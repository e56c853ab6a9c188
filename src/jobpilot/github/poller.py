"""GitHub polling: periodically checks mapped repositories for ``cmd:`` labels.

Fallback for deployments where GitHub webhooks cannot reach the service
(behind NAT or a firewall). Every interval the poller lists the open issues
carrying each watched label in each mapped repository and triggers a job
for any it has not dispatched yet. It also prunes old working copies about
once an hour.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import httpx
import structlog

from jobpilot.github.webhooks import command_from_label

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from jobpilot.config import Settings
    from jobpilot.github.client import GitHubClient
    from jobpilot.jobs.manager import TriggerResult

    TriggerCallback = Callable[..., Awaitable[TriggerResult]]
    CleanupCallback = Callable[[], Awaitable[object]]

logger = structlog.get_logger()

CLEANUP_INTERVAL_SECONDS = 3600

IssueKey = tuple[str, int, str]


class GitHubPoller:
    """Polls mapped repositories for issues labeled with a watched ``cmd:`` label.

    Each (repo, issue, label) is dispatched once. Once the label disappears
    from the issue (the trigger removes it) the key is forgotten, so adding
    the label again later triggers a new run.
    """

    def __init__(
        self,
        settings: Settings,
        github: GitHubClient,
        *,
        repo_map: dict[str, str],
        on_trigger: TriggerCallback | None = None,
        on_cleanup: CleanupCallback | None = None,
        labels: list[str] | None = None,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._github = github
        self._repo_map = repo_map
        self._on_trigger = on_trigger
        self._on_cleanup = on_cleanup
        self._labels = list(labels if labels is not None else settings.jobpilot_command_labels)
        self._poll_interval: int = settings.jobpilot_poll_interval
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.monotonic()
        self._seen: set[IssueKey] = set()
        self._running = False

    # -- public API ----------------------------------------------------------

    async def start(self) -> None:
        """Start the polling loop.  Runs until ``stop()`` is called."""
        self._running = True
        logger.info(
            "poller.starting",
            interval=self._poll_interval,
            repos=len(self._repo_map),
            labels=self._labels,
        )

        while self._running:
            try:
                await self._poll()
            except Exception:
                logger.exception("poller.error")

            try:
                await self._maybe_cleanup()
            except Exception:
                logger.exception("poller.cleanup_error")

            await asyncio.sleep(self._poll_interval)

    def stop(self) -> None:
        """Signal the polling loop to stop after its current iteration."""
        self._running = False
        logger.info("poller.stopping")

    @property
    def seen_issues(self) -> set[IssueKey]:
        """(repo, issue, label) keys already dispatched (read-only copy)."""
        return set(self._seen)

    def mark_seen(self, repo: str, issue_number: int, label: str) -> None:
        """Manually mark an issue so the poller won't trigger it again."""
        self._seen.add((repo, issue_number, label))

    # -- internals -----------------------------------------------------------

    async def _poll(self) -> None:
        """List labeled issues in every mapped repo and trigger new ones."""
        present: set[IssueKey] = set()
        failed_repos: set[str] = set()

        for repo in self._repo_map:
            for label in self._labels:
                command = command_from_label(label)
                if command is None:
                    continue
                try:
                    issues = await self._github.list_issues_with_label(repo, label)
                except httpx.HTTPError as e:
                    logger.warning("poller.list_failed", repo=repo, label=label, error=str(e))
                    failed_repos.add(repo)
                    continue

                for issue in issues:
                    key = (repo, issue["number"], label)
                    present.add(key)
                    if key in self._seen:
                        continue
                    self._seen.add(key)
                    logger.info("poller.triggered", repo=repo, issue_number=issue["number"], label=label)
                    if self._on_trigger is None:
                        continue
                    try:
                        await self._on_trigger(repo, issue["number"], issue.get("title", ""), command, label=label)
                    except Exception:
                        logger.exception("poller.callback_error", repo=repo, issue_number=issue["number"])

        # Forget keys whose label is gone so a re-label triggers again
        gone = {key for key in self._seen if key not in present and key[0] not in failed_repos}
        if gone:
            logger.debug("poller.recycling_seen", count=len(gone))
            self._seen -= gone

    async def _maybe_cleanup(self) -> None:
        if self._on_cleanup is None:
            return
        if time.monotonic() - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = time.monotonic()
        await self._on_cleanup()
