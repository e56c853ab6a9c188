"""Exception types shared across the job pipeline."""

from __future__ import annotations


class JobPilotError(Exception):
    """Base class for jobpilot errors."""


class JobNotFoundError(JobPilotError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class InvalidStateError(JobPilotError):
    """A job was asked to make a transition its current status does not allow."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Job '{job_id}' is {current}; cannot move to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class WorktreeError(JobPilotError):
    """Working-copy creation or inspection failed."""


class PersistenceError(JobPilotError):
    """The job store could not complete an operation."""


class AgentSpawnError(JobPilotError):
    """The agent command could not be rendered or started."""
