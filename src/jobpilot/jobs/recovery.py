"""Startup recovery for jobs orphaned by a restart."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from jobpilot.store import JobStore

logger = structlog.get_logger()


async def recover_interrupted_jobs(store: JobStore) -> int:
    """Mark every job still recorded as ``running`` as ``interrupted``.

    No process survives a restart, so a ``running`` status seen at boot is
    stale. Must run before the service accepts triggers. A store failure
    propagates: the service cannot start without its persisted state.
    """
    count = await store.mark_interrupted_jobs()
    if count:
        logger.warning("recovery.jobs_interrupted", count=count)
    else:
        logger.info("recovery.none_needed")
    return count
