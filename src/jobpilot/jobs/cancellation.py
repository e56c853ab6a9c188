"""Process-wide registry of jobs flagged for cancellation."""

from __future__ import annotations

import threading

import structlog

logger = structlog.get_logger()


class CancellationToken:
    """Handed to a streaming loop and checked once per line."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CancellationRegistry:
    """Set of cancelled job ids plus the tokens of jobs currently streaming.

    All mutation happens under one lock; a token issued after ``cancel`` is
    already set, so a cancel that races the start of a run is not lost.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flagged: set[str] = set()
        self._tokens: dict[str, CancellationToken] = {}

    def cancel(self, job_id: str) -> None:
        with self._lock:
            self._flagged.add(job_id)
            token = self._tokens.get(job_id)
            if token is not None:
                token.set()
        logger.info("cancellation.flagged", job_id=job_id)

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._flagged

    def token(self, job_id: str) -> CancellationToken:
        """Return the job's token, creating it (pre-set if already flagged)."""
        with self._lock:
            token = self._tokens.get(job_id)
            if token is None:
                token = CancellationToken(job_id)
                if job_id in self._flagged:
                    token.set()
                self._tokens[job_id] = token
            return token

    def clear(self, job_id: str) -> None:
        """Forget the flag and token once the job has reached a terminal state."""
        with self._lock:
            self._flagged.discard(job_id)
            self._tokens.pop(job_id, None)

    def all_cancelled(self) -> set[str]:
        with self._lock:
            return set(self._flagged)
