"""Job status notifications to Slack."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from slack_bolt import App

if TYPE_CHECKING:
    from jobpilot.config import Settings
    from jobpilot.models import Job

logger = structlog.get_logger()

EVENT_TITLES = {
    "started": ":rocket: Started",
    "waiting_approval": ":raised_hand: Waiting for approval",
    "completed": ":white_check_mark: Complete",
    "failed": ":x: Failed",
    "cancelled": ":no_entry_sign: Cancelled",
}


def create_slack_app(settings: Settings) -> App | None:
    """Create the Slack Bolt app. Returns None if not configured."""
    if not settings.slack_bot_token or not settings.slack_signing_secret:
        logger.warning("slack.not_configured", msg="Slack tokens not set, notifications disabled")
        return None

    app = App(
        token=settings.slack_bot_token,
        signing_secret=settings.slack_signing_secret,
    )
    logger.info("slack.app_created")
    return app


class SlackNotifier:
    """Posts one message per job event; never raises."""

    def __init__(self, slack_app: App | None, channel: str) -> None:
        self._app = slack_app
        self._channel = channel

    @staticmethod
    def format_event(job: Job, event: str, detail: str | None = None) -> str:
        title = EVENT_TITLES.get(event, event)
        command = job.short_command.capitalize()
        text = f"{title}: *{command}* {job.repo}#{job.issue_num} {job.issue_title[:50]}"
        if detail:
            text += f"\n> {detail[:200]}"
        return text

    def post_job_event(self, job: Job, event: str, detail: str | None = None) -> None:
        message = self.format_event(job, event, detail)
        if not self._app:
            logger.info("notify.no_slack", job_id=job.id, job_event=event)
            return

        try:
            self._app.client.chat_postMessage(channel=self._channel, text=message)
            logger.info("notify.posted", job_id=job.id, job_event=event)
        except Exception as e:
            logger.error("notify.error", job_id=job.id, job_event=event, error=str(e))
