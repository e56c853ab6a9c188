"""Application configuration via environment variables."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()

DEFAULT_AGENT_COMMAND = (
    'claude -p "/{command} {issue_num}" --verbose '
    "--output-format stream-json --dangerously-skip-permissions"
)


class Settings(BaseSettings):
    """All jobpilot configuration, loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- GitHub ---
    github_token: str = Field(default="", description="GitHub token used for issue comments and labels")
    github_webhook_secret: str = Field(default="", description="Shared secret for webhook signatures")

    # --- Slack ---
    slack_bot_token: str = Field(default="", description="Slack bot OAuth token (xoxb-)")
    slack_signing_secret: str = Field(default="", description="Slack signing secret")
    slack_notify_channel: str = Field(default="jobpilot", description="Slack channel for job notifications")

    # --- App ---
    jobpilot_log_level: str = Field(default="INFO", description="Log level")
    jobpilot_data_dir: Path = Field(default=Path.home() / ".jobpilot", description="Database and job logs")
    jobpilot_worktree_dir: Path = Field(
        default=Path("/tmp/jobpilot-worktrees"), description="Base directory for per-issue working copies"
    )
    jobpilot_repo_map: Path = Field(default=Path("repo_map.json"), description="owner/repo -> local checkout map")
    jobpilot_agent_command: str = Field(default=DEFAULT_AGENT_COMMAND, description="Agent CLI command template")
    jobpilot_extra_paths: list[str] = Field(
        default=["/opt/homebrew/bin", "/usr/local/bin", "~/.npm-global/bin", "~/.local/bin"],
        description="Entries prepended to PATH for the agent process",
    )
    jobpilot_terminate_grace_seconds: float = Field(
        default=5.0, description="Seconds between the group SIGTERM and SIGKILL"
    )
    jobpilot_poll_enabled: bool = Field(default=True, description="Poll GitHub for cmd: labels")
    jobpilot_poll_interval: int = Field(default=60, description="Seconds between GitHub polling cycles")
    jobpilot_command_labels: list[str] = Field(
        default=[
            "cmd:plan-headless",
            "cmd:implement-headless",
            "cmd:retrospective-headless",
            "cmd:revise-headless",
        ],
        description="Issue labels the poller turns into jobs",
    )
    jobpilot_worktree_max_age_days: int = Field(default=7, description="Age after which working copies are pruned")

    @property
    def database_path(self) -> Path:
        return self.jobpilot_data_dir / "jobpilot.db"

    @property
    def logs_dir(self) -> Path:
        return self.jobpilot_data_dir / "logs"


def get_settings() -> Settings:
    """Create and return settings instance."""
    return Settings()


def load_repo_map(path: Path) -> dict[str, str]:
    """Load the ``owner/repo`` -> local checkout mapping.

    Returns an empty map (and logs a warning) when the file is missing or
    not a JSON object of strings.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("config.repo_map_missing", path=str(path))
        return {}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("config.repo_map_invalid", path=str(path), error=str(e))
        return {}

    if not isinstance(raw, dict):
        logger.warning("config.repo_map_invalid", path=str(path), error="expected a JSON object")
        return {}
    return {str(repo): str(local) for repo, local in raw.items()}
