"""Tests for job log reading."""

from __future__ import annotations

import json


def test_strip_ansi():
    """Colour codes and carriage returns are removed."""
    from jobpilot.jobs.logs import strip_ansi

    assert strip_ansi("\x1b[32mok\x1b[0m\r") == "ok"


def test_read_log_missing(tmp_path):
    """A log that does not exist yet reads as a placeholder."""
    from jobpilot.jobs.logs import WAITING_PLACEHOLDER, read_log

    assert read_log(tmp_path / "nope.log") == WAITING_PLACEHOLDER


def test_read_log_tail(tmp_path):
    """The tail skips blank lines."""
    from jobpilot.jobs.logs import read_log_tail

    path = tmp_path / "job.log"
    path.write_text("one\ntwo\n\n\x1b[1mthree\x1b[0m\n")

    assert read_log_tail(path, 3) == ["two", "three"]
    assert read_log_tail(path, 0) == []
    assert read_log_tail(tmp_path / "nope.log") == []


def test_read_file_tail_truncates_to_whole_lines(tmp_path):
    """Truncated reads start at a line boundary and can carry a notice."""
    from jobpilot.jobs.logs import read_file_tail

    path = tmp_path / "job.log"
    path.write_text("".join(f"line {i}\n" for i in range(100)))

    tail = read_file_tail(path, 30)
    assert tail.startswith("line ")
    assert tail.endswith("line 99\n")

    with_notice = read_file_tail(path, 30, notice=True)
    assert with_notice.startswith("... (showing last")
    assert read_file_tail(path, 10_000) == path.read_text()
    assert read_file_tail(tmp_path / "nope.log", 10) is None


def test_parse_summary(tmp_path):
    """The last result event drives the summary."""
    from jobpilot.jobs.logs import parse_summary

    path = tmp_path / "job.log"
    path.write_text(
        "\n".join([
            json.dumps({"type": "result", "result": "first", "total_cost_usd": 0.1}),
            "not json",
            json.dumps({
                "type": "result",
                "result": "Done, see https://github.com/org/repo/pull/12",
                "total_cost_usd": 1.234,
                "duration_ms": 125_000,
                "num_turns": 9,
            }),
        ])
    )

    summary = parse_summary(path)
    assert summary.is_complete
    assert summary.pr_url == "https://github.com/org/repo/pull/12"
    assert summary.cost_formatted == "$1.23"
    assert summary.duration_formatted == "2m 5s"
    assert summary.turns == 9
    assert summary.error is None


def test_parse_summary_error_and_missing(tmp_path):
    """Error results are surfaced; logs without results are incomplete."""
    from jobpilot.jobs.logs import parse_summary

    path = tmp_path / "job.log"
    path.write_text(json.dumps({"type": "result", "result": "Rate limited", "is_error": True}) + "\n")
    assert parse_summary(path).error == "Rate limited"

    plain = tmp_path / "plain.log"
    plain.write_text("hello\n")
    summary = parse_summary(plain)
    assert not summary.is_complete
    assert summary.cost_formatted == "-"
    assert summary.duration_formatted == "-"


def test_recent_activity(tmp_path):
    """Tool calls and tool errors are listed oldest first."""
    from jobpilot.jobs.logs import recent_activity

    def assistant(block):
        return json.dumps({"type": "assistant", "message": {"content": [block]}})

    path = tmp_path / "job.log"
    path.write_text(
        "\n".join([
            assistant({"type": "tool_use", "name": "Read", "input": {"file_path": "/src/app/main.py"}}),
            assistant({"type": "tool_use", "name": "Bash", "input": {"description": "Run tests"}}),
            json.dumps({"type": "user", "message": {"content": [{"type": "tool_result", "is_error": True}]}}),
            assistant({"type": "text", "text": "thinking"}),
        ])
    )

    assert recent_activity(path) == ["Read: main.py", "Bash: Run tests", "Tool error"]
    assert recent_activity(path, max_items=1) == ["Tool error"]
