"""Acknowledge-then-process task hand-off.

The webhook handler submits a unit of work and returns; the work runs after
the response has been sent. Outcomes are visible only through logs and the
counters below, never through the original HTTP response.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import BackgroundTasks

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Runs submitted jobs after the response, logging every failure."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {"scheduled": 0, "succeeded": 0, "failed": 0}

    def submit(
        self,
        background: BackgroundTasks,
        name: str,
        job: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        """Queue ``job(*args)`` to run once the response is sent."""
        self.counts["scheduled"] += 1
        background.add_task(self.run, name, job, *args)
        logger.info("Scheduled background task: %s", name)

    async def run(self, name: str, job: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Execute one job; exceptions end here."""
        start = time.time()
        try:
            result = await job(*args)
        except Exception:
            self.counts["failed"] += 1
            logger.exception("Background task FAILED: %s", name)
            return None
        self.counts["succeeded"] += 1
        logger.info("Background task finished: %s (%.1fms)", name, (time.time() - start) * 1000)
        return result
