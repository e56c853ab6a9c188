"""Read-only access to job log files."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

WAITING_PLACEHOLDER = "Waiting for output..."
SUMMARY_TAIL_BYTES = 64 * 1024
ACTIVITY_TAIL_BYTES = 128 * 1024

ANSI_RE = re.compile(r"\x1b\[[^a-zA-Z]*[a-zA-Z]|\x1b\][^\x07]*\x07|\x1b[<>=()].|\r")
PR_URL_RE = re.compile(r"https://github\.com/[^/]+/[^/]+/pull/\d+")


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def read_log(path: str | Path, *, strip: bool = True) -> str:
    """Whole log, or a placeholder when the file does not exist yet."""
    try:
        content = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return WAITING_PLACEHOLDER
    return strip_ansi(content) if strip else content


def read_log_tail(path: str | Path, lines: int = 50, *, strip: bool = True) -> list[str]:
    """Last ``lines`` lines, blank lines dropped."""
    try:
        content = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    tail = content.splitlines()[-lines:] if lines > 0 else []
    if strip:
        tail = [strip_ansi(line).strip() for line in tail]
    return [line for line in tail if line.strip()]


def read_file_tail(path: str | Path, max_bytes: int, *, notice: bool = False) -> str | None:
    """Last ``max_bytes`` of a file, starting at the first whole line.

    With ``notice`` a marker line is prepended when the file was truncated.
    Returns None when the file cannot be read.
    """
    try:
        with open(path, "rb") as fh:
            fh.seek(0, 2)
            size = fh.tell()
            start = max(0, size - max_bytes)
            fh.seek(start)
            data = fh.read()
    except OSError:
        return None

    content = data.decode("utf-8", errors="replace")
    if start > 0:
        _, _, content = content.partition("\n")
        if notice:
            content = f"... (showing last ~{max_bytes // 1024}KB of log) ...\n\n{content}"
    return content


@dataclass(frozen=True)
class LogSummary:
    result: str | None = None
    pr_url: str | None = None
    duration_seconds: float | None = None
    cost_usd: float | None = None
    turns: int | None = None
    is_complete: bool = False
    error: str | None = None

    @property
    def duration_formatted(self) -> str:
        if self.duration_seconds is None:
            return "-"
        minutes, seconds = divmod(int(self.duration_seconds), 60)
        return f"{minutes}m {seconds}s" if minutes else f"{seconds}s"

    @property
    def cost_formatted(self) -> str:
        return "-" if self.cost_usd is None else f"${self.cost_usd:.2f}"


def _events(content: str):
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict):
            yield event


def parse_summary(path: str | Path) -> LogSummary:
    """Summary from the last ``result`` event of a log."""
    content = read_file_tail(path, SUMMARY_TAIL_BYTES)
    if not content:
        return LogSummary()

    results = [event for event in _events(content) if event.get("type") == "result"]
    if not results:
        return LogSummary()

    event = results[-1]
    result = event.get("result") if isinstance(event.get("result"), str) else None
    duration_ms = event.get("duration_ms")
    pr_match = PR_URL_RE.search(result) if result else None
    return LogSummary(
        result=result,
        pr_url=pr_match.group(0) if pr_match else None,
        duration_seconds=duration_ms / 1000 if isinstance(duration_ms, int | float) else None,
        cost_usd=event.get("total_cost_usd"),
        turns=event.get("num_turns"),
        is_complete=True,
        error=result if event.get("is_error") else None,
    )


def _activity(event: dict) -> str | None:
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return None

    if event.get("type") == "assistant":
        for block in content:
            if not isinstance(block, dict) or not isinstance(block.get("input"), dict):
                continue
            name = block.get("name")
            tool_input = block["input"]
            if isinstance(tool_input.get("description"), str):
                return f"{name}: {tool_input['description']}"
            if isinstance(tool_input.get("command"), str):
                return f"{name}: {tool_input['command'][:60]}..."
            if isinstance(tool_input.get("file_path"), str):
                return f"{name}: {Path(tool_input['file_path']).name}"
    elif event.get("type") == "user":
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result" and block.get("is_error"):
                return "Tool error"
    return None


def recent_activity(path: str | Path, max_items: int = 20) -> list[str]:
    """Recent tool calls and tool errors, oldest first."""
    content = read_file_tail(path, ACTIVITY_TAIL_BYTES)
    if not content:
        return []
    activities = [a for a in (_activity(event) for event in _events(content)) if a]
    return activities[-max_items:] if max_items > 0 else []
