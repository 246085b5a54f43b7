"""Background poller for due jobs.

Picks up work no inline pipeline run is driving:
- Standalone jobs (frame extraction, connector syncs, webhooks, exports)
- Retries whose backoff elapsed after their pipeline run ended
- Downstream stages unblocked by an operator retry
- Jobs left processing by a crashed claimer (after ``jobs.stale_after_s``)

It claims through the same atomic claim as inline runs, so both can work the
same store. Idle ticks back off exponentially from ``poll_interval_s`` up to
``max_poll_interval_s``; finding work resets the interval.
"""

import asyncio
import logging
from typing import List, Optional

from ..models import PipelineConfig
from .backends import JobStore
from .executor import JobExecutor
from .models import StageOutcome

logger = logging.getLogger(__name__)


class JobPoller:
    def __init__(self, store: JobStore, executor: JobExecutor, config: PipelineConfig):
        self.store = store
        self.executor = executor
        self.config = config
        self.interval = config.poller.poll_interval_s

    async def poll_once(self) -> List[StageOutcome]:
        """Run up to ``batch_size`` due jobs concurrently.

        Jobs whose claimer went silent are reset first so they count as due.

        Returns:
            Outcomes of the jobs this tick tried to run (losers of a claim
            race show up as not_claimed)
        """
        self.store.reset_stale(self.config.jobs.stale_after_s)
        due = self.store.list_due(self.config.poller.batch_size)
        if not due:
            return []

        logger.debug("Poller found %d due jobs", len(due))
        results = await asyncio.gather(
            *(self.executor.run_job(job.id) for job in due),
            return_exceptions=True,
        )

        outcomes = []
        for job, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error("Poller run of job %s crashed: %r", job.id, result)
                outcomes.append(StageOutcome(job_id=job.id, state="failed", error=str(result)))
            else:
                outcomes.append(result)
        return outcomes

    def next_interval(self, found_work: bool) -> float:
        """Reset on work, otherwise double up to the configured maximum."""
        poller = self.config.poller
        if found_work:
            self.interval = poller.poll_interval_s
        else:
            self.interval = min(self.interval * 2, poller.max_poll_interval_s)
        return self.interval

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll until ``stop_event`` is set (or forever)."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Job poller started (batch size %d)", self.config.poller.batch_size)

        while not stop_event.is_set():
            try:
                outcomes = await self.poll_once()
            except Exception:
                logger.exception("Poller tick failed")
                outcomes = []

            if any(o.state != "not_claimed" for o in outcomes):
                # More work is likely waiting; go again right away
                self.next_interval(True)
                delay = 0.01
            else:
                delay = self.interval
                self.next_interval(False)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Job poller stopped")
