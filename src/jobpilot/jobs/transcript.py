"""Rebuild what the agent "said" from its raw stream-json log.

Event shapes drift between CLI versions, so this is deliberately lenient:
anything carrying text is kept, everything else is dropped.
"""

from __future__ import annotations

import json


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def line_fragment(line: str) -> str:
    """Return the transcript text contributed by one log line."""
    stripped = line.strip()
    if not stripped:
        return ""

    try:
        event = json.loads(stripped)
    except ValueError:
        event = None

    if not isinstance(event, dict):
        # Plain diagnostic text; a broken JSON envelope is noise
        if stripped.startswith("{"):
            return ""
        return stripped + " "

    event_type = event.get("type")

    if event_type == "stream_event":
        delta = _dict(_dict(event.get("event")).get("delta"))
        if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
            return delta["text"]
        if delta.get("type") == "input_json_delta" and isinstance(delta.get("partial_json"), str):
            return delta["partial_json"]
        return ""

    if event_type == "content_block_delta":
        delta = _dict(event.get("delta"))
        if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
            return delta["text"]
        return ""

    if event_type == "assistant":
        content = _dict(event.get("message")).get("content")
        if not isinstance(content, list):
            return ""
        parts = [
            block["text"] + " "
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        return "".join(parts)

    return ""


def reconstruct_transcript(log: str) -> str:
    """Concatenate the text fragments of every line in ``log``."""
    return "".join(line_fragment(line) for line in log.splitlines())
