"""Retry decisions for failed job attempts.

Attempt accounting (``attempt_count`` counts finished attempts):
- non-retriable failure        → failed,  attempt_count + 1
- retriable, k + 1 < max       → pending, attempt_count + 1, run_after = now + backoff(k + 1)
- retriable, attempts exhausted → failed,  attempt_count + 1 (== max_attempts)

The store applies each decision with a conditional update, so a decision
for a job that is no longer processing changes nothing.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from ..config import backoff_delay
from ..models import PipelineConfig
from .backends import JobStore
from .models import Job, JobStatus, utcnow
from .registry import JobNotFoundError, JobNotRetriableError

logger = logging.getLogger(__name__)


class RetryDecision(BaseModel):
    """What happened to a job after a failed attempt."""

    job_id: str
    status: JobStatus
    attempt_count: int
    run_after: Optional[datetime] = None
    error: str
    job: Optional[Job] = None

    @property
    def terminal(self) -> bool:
        return self.status == JobStatus.FAILED


class RetryController:
    """Reschedules or terminates failed jobs, and serves operator retries."""

    def __init__(self, store: JobStore, config: PipelineConfig):
        self.store = store
        self.config = config

    def backoff(self, attempt_count: int) -> float:
        return backoff_delay(self.config, attempt_count)

    def on_failure(
        self,
        job: Job,
        error: str,
        retriable: bool,
        max_attempts: Optional[int] = None,
    ) -> RetryDecision:
        """Record a failed attempt of a processing job.

        Args:
            job: The job as claimed (attempt_count before this attempt)
            error: Human readable error message
            retriable: Classification of the failure
            max_attempts: Optional tighter budget for this pipeline run
        """
        budget = job.max_attempts if max_attempts is None else min(max_attempts, job.max_attempts)
        attempts = min(job.attempt_count + 1, job.max_attempts)

        if retriable and attempts < budget:
            run_after = utcnow() + timedelta(seconds=self.backoff(attempts))
            updated = self.store.schedule_retry(job.id, attempts, run_after, error)
            if updated is not None:
                logger.info(
                    "Job %s (%s) failed attempt %d/%d, retrying after %s: %s",
                    job.id, job.type.value, attempts, budget, run_after.isoformat(), error,
                )
                return RetryDecision(
                    job_id=job.id,
                    status=JobStatus.PENDING,
                    attempt_count=attempts,
                    run_after=run_after,
                    error=error,
                    job=updated,
                )
            logger.warning("Job %s left processing before its retry was recorded", job.id)
            return self._current(job, error)

        updated = self.store.fail(job.id, attempts, error)
        if updated is None:
            logger.warning("Job %s left processing before its failure was recorded", job.id)
            return self._current(job, error)

        if retriable:
            logger.error("Job %s (%s) exhausted %d attempts: %s",
                         job.id, job.type.value, attempts, error)
        else:
            logger.error("Job %s (%s) failed permanently: %s", job.id, job.type.value, error)

        return RetryDecision(
            job_id=job.id,
            status=JobStatus.FAILED,
            attempt_count=updated.attempt_count,
            error=error,
            job=updated,
        )

    def _current(self, job: Job, error: str) -> RetryDecision:
        current = self.store.get(job.id) or job
        return RetryDecision(
            job_id=job.id,
            status=current.status,
            attempt_count=current.attempt_count,
            run_after=current.run_after if current.status == JobStatus.PENDING else None,
            error=error,
            job=current,
        )

    def manual_retry(self, job_id: str) -> Job:
        """Operator retry: failed → pending, due immediately.

        Raises:
            JobNotFoundError: Unknown job id
            JobNotRetriableError: Job is not failed, has no attempts left, or
                another outstanding job already holds its dedupe key
        """
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")

        if job.status != JobStatus.FAILED:
            raise JobNotRetriableError(
                f"Job {job_id} is {job.status.value}; only failed jobs can be retried"
            )
        if job.attempt_count >= job.max_attempts:
            raise JobNotRetriableError(
                f"Job {job_id} has used all {job.max_attempts} attempts"
            )

        updated = self.store.reset_for_retry(job_id)
        if updated is None:
            raise JobNotRetriableError(f"Job {job_id} could not be reset for retry")

        logger.info("Job %s (%s) reset to pending by operator", job_id, job.type.value)
        return updated
