"""Stuck-job reaper: returns abandoned leases to the queue."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

from reward_pipeline.jobs.models import JobView
from reward_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class StuckJobReaper:
    """Reclaims running jobs whose lease is older than ``lease_timeout``.

    Stage, context and attempts are kept, so the next claim resumes the job at
    the stage that was in flight.
    """

    def __init__(self, *, repository: JobRepository, lease_timeout: timedelta) -> None:
        if lease_timeout.total_seconds() <= 0:
            raise ValueError("lease_timeout must be > 0")
        self.repository = repository
        self.lease_timeout = lease_timeout

    def run_once(self) -> list[JobView]:
        reclaimed = self.repository.reclaim_expired_leases(lease_timeout=self.lease_timeout)
        for job in reclaimed:
            logger.warning(
                "Reclaimed expired lease of job %s (stage=%s, attempts=%d/%d)",
                job.id,
                job.stage,
                job.attempts,
                job.max_attempts,
            )
        return reclaimed

    def run_forever(self, stop_event: threading.Event, *, interval_seconds: float) -> int:
        """Scan every ``interval_seconds`` until ``stop_event`` is set; returns jobs reclaimed."""

        total = 0
        while not stop_event.is_set():
            try:
                total += len(self.run_once())
            except Exception:  # noqa: BLE001
                logger.exception("Reaper scan failed")
            stop_event.wait(interval_seconds)
        return total
