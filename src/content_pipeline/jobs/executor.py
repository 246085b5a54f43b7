"""Job executor: claims jobs, runs their handlers and walks pipelines.

The executor never mutates a job without first winning the store's atomic
claim, so an inline pipeline run and the background poller can both point
at the same rows. Handler calls are the only suspension points besides
backoff sleeps and stage waits.

Stream events for one content id all come from the run driving it:
    log "<stage> started" → progress ... → progress 100 → ... → complete
or, on a terminal failure, an ``error`` event that ends the stream.
"""

import asyncio
import logging
import os
import uuid
from typing import Any, Dict, List, Optional, Set

from ..models import PipelineConfig
from ..streaming import EventType, StreamingManager
from .backends import ContentStore, JobStore
from .models import ContentStatus, Job, JobStatus, PipelineResult, StageOutcome, utcnow
from .planner import stage_done_status, stage_label, stage_start_status
from .registry import HandlerRegistry, ProgressCallback, classify_error
from .retry import RetryController

logger = logging.getLogger(__name__)


class JobExecutor:
    """Runs single jobs and whole pipeline runs.

    Args:
        store: Job store providing the atomic claim
        contents: Content accessor for status mirroring
        registry: JobType → handler map
        streaming: Live event channels
        retry: Failure policy
        config: Resolved configuration
        worker_id: Claimer identity recorded on claimed jobs
    """

    def __init__(
        self,
        store: JobStore,
        contents: ContentStore,
        registry: HandlerRegistry,
        streaming: StreamingManager,
        retry: RetryController,
        config: PipelineConfig,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.contents = contents
        self.registry = registry
        self.streaming = streaming
        self.retry = retry
        self.config = config
        self.worker_id = worker_id or f"executor-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Events and status mirroring
    # ------------------------------------------------------------------

    def _stage_data(
        self, job: Job, stage_index: Optional[int], total_stages: Optional[int], **extra: Any
    ) -> Dict[str, Any]:
        data = {
            "job_id": job.id,
            "job_type": job.type.value,
            "stage_index": stage_index,
            "total_stages": total_stages,
        }
        data.update(extra)
        return data

    def _emit(self, job: Job, event_type: EventType, message: str, data: Dict[str, Any]) -> None:
        if job.content_id:
            self.streaming.send(job.content_id, event_type, message, data)

    def _progress_callback(
        self, job: Job, stage_index: Optional[int], total_stages: Optional[int]
    ) -> ProgressCallback:
        def progress(percent: int, message: str, data: Optional[Dict[str, Any]] = None) -> None:
            percent = max(0, min(100, int(percent)))
            self.store.update_progress(job.id, percent, message)
            event_data = dict(data or {})
            event_data.update(self._stage_data(job, stage_index, total_stages, percent=percent))
            self._emit(job, EventType.PROGRESS, message, event_data)

        return progress

    async def _heartbeat(self, job_id: str) -> None:
        """Keep a long handler's claim fresh so crash recovery leaves it alone."""
        while True:
            await asyncio.sleep(self.config.jobs.heartbeat_interval_s)
            if not self.store.update_heartbeat(job_id):
                return

    def _is_last_stage(self, job: Job) -> bool:
        return bool(job.payload.get("pipeline")) and not self.store.has_pending_dependents(job.id)

    def _report_failure(
        self, job: Job, error: str, stage_index: Optional[int], total_stages: Optional[int]
    ) -> None:
        label = stage_label(job.type)
        if job.content_id:
            self.contents.update_status(job.content_id, ContentStatus.ERROR, f"{label} failed: {error}")
        self._emit(
            job,
            EventType.ERROR,
            f"{label} failed: {error}",
            self._stage_data(job, stage_index, total_stages, attempt_count=job.attempt_count),
        )

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    async def run_job(
        self,
        job_id: str,
        stage_index: Optional[int] = None,
        total_stages: Optional[int] = None,
        max_attempts: Optional[int] = None,
        announce_completion: bool = True,
    ) -> StageOutcome:
        """Claim and execute one job.

        Args:
            job_id: Job to run
            stage_index: Position in the pipeline (defaults to the payload's)
            total_stages: Pipeline length (defaults to the payload's)
            max_attempts: Optional tighter attempt budget for this run
            announce_completion: Emit ``complete`` when this job finishes a
                pipeline; run_pipeline sends its own

        Returns:
            StageOutcome with state completed, retry, failed or not_claimed
        """
        job = self.store.claim(job_id, self.worker_id)
        if job is None:
            return StageOutcome(job_id=job_id, state="not_claimed", job=self.store.get(job_id))

        if stage_index is None:
            stage_index = job.payload.get("stage_index")
        if total_stages is None:
            total_stages = job.payload.get("total_stages")

        label = stage_label(job.type)
        logger.info("%s claimed %s job %s (attempt %d/%d)",
                    self.worker_id, job.type.value, job.id, job.attempt_count + 1, job.max_attempts)
        self._emit(
            job,
            EventType.LOG,
            f"{label} started",
            self._stage_data(
                job, stage_index, total_stages,
                attempt=job.attempt_count + 1, max_attempts=job.max_attempts,
            ),
        )

        start_status = stage_start_status(job.type)
        if job.content_id and start_status is not None:
            self.contents.update_status(job.content_id, start_status)

        heartbeat = asyncio.create_task(self._heartbeat(job.id), name=f"heartbeat-{job.id}")
        try:
            handler = self.registry.get(job.type)
            result = await asyncio.wait_for(
                handler(dict(job.payload), self._progress_callback(job, stage_index, total_stages)),
                timeout=self.config.jobs.handler_timeout_s,
            )
        except asyncio.CancelledError:
            # Interrupted, not failed: hand the job back uncounted
            self.store.release(job.id, "Interrupted before finishing")
            logger.warning("%s job %s interrupted, released to pending", job.type.value, job.id)
            raise
        except Exception as e:
            error, retriable = classify_error(e)
            logger.warning("%s job %s raised %s (retriable=%s)",
                           job.type.value, job.id, type(e).__name__, retriable)
            return self._handle_failure(job, error, retriable, stage_index, total_stages, max_attempts)
        finally:
            heartbeat.cancel()

        if result is None:
            result = {}
        elif not isinstance(result, dict):
            result = {"value": result}

        completed = self.store.complete(job.id, result)
        if completed is None:
            logger.warning("Job %s was no longer processing when its handler returned", job.id)
            return StageOutcome(job_id=job.id, state="not_claimed", job=self.store.get(job.id))

        last_stage = self._is_last_stage(completed)
        if completed.content_id:
            done_status = ContentStatus.COMPLETED if last_stage else stage_done_status(completed.type)
            if done_status is not None:
                self.contents.update_status(completed.content_id, done_status)

        logger.info("%s job %s completed", completed.type.value, completed.id)
        self._emit(
            completed,
            EventType.PROGRESS,
            f"{label} completed",
            self._stage_data(completed, stage_index, total_stages, percent=100),
        )
        if announce_completion and last_stage and completed.content_id:
            self.streaming.send_complete(
                completed.content_id, "Processing complete", {"content_id": completed.content_id}
            )

        return StageOutcome(job_id=completed.id, state="completed", job=completed)

    def _handle_failure(
        self,
        job: Job,
        error: str,
        retriable: bool,
        stage_index: Optional[int],
        total_stages: Optional[int],
        max_attempts: Optional[int],
    ) -> StageOutcome:
        decision = self.retry.on_failure(job, error, retriable, max_attempts=max_attempts)
        label = stage_label(job.type)

        if decision.status == JobStatus.PENDING:
            delay = max(0.0, (decision.run_after - utcnow()).total_seconds())
            self._emit(
                job,
                EventType.LOG,
                f"{label} failed, retrying in {delay:.1f}s "
                f"(attempt {decision.attempt_count}/{job.max_attempts}): {error}",
                self._stage_data(
                    job, stage_index, total_stages,
                    attempt_count=decision.attempt_count,
                    run_after=decision.run_after.isoformat(),
                ),
            )
            return StageOutcome(
                job_id=job.id,
                state="retry",
                job=decision.job,
                error=error,
                run_after=decision.run_after,
            )

        if decision.status == JobStatus.FAILED:
            self._report_failure(decision.job or job, error, stage_index, total_stages)
            return StageOutcome(job_id=job.id, state="failed", job=decision.job, error=error)

        return StageOutcome(job_id=job.id, state="not_claimed", job=decision.job, error=error)

    # ------------------------------------------------------------------
    # Pipeline runs
    # ------------------------------------------------------------------

    async def _drive_stage(
        self,
        job_id: str,
        stage_index: int,
        total_stages: int,
        max_attempts: Optional[int],
    ) -> StageOutcome:
        """Bring one stage to a terminal state, or give up waiting."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.jobs.stage_wait_timeout_s
        first_look = True

        while True:
            job = self.store.get(job_id)
            if job is None:
                return StageOutcome(job_id=job_id, state="failed", error=f"Job not found: {job_id}")

            # Resumed runs start mid-plan; the payload knows the real position
            stage_index = job.payload.get("stage_index", stage_index)
            total_stages = job.payload.get("total_stages", total_stages)

            if job.status == JobStatus.COMPLETED:
                state = "skipped" if first_look else "completed"
                if first_look:
                    self._emit(
                        job,
                        EventType.LOG,
                        f"{stage_label(job.type)} already completed, skipping",
                        self._stage_data(job, stage_index, total_stages),
                    )
                return StageOutcome(job_id=job_id, state=state, job=job)

            if job.status == JobStatus.FAILED:
                error = job.error_message or "Stage failed"
                if first_look:
                    self._report_failure(job, error, stage_index, total_stages)
                return StageOutcome(job_id=job_id, state="failed", job=job, error=error)

            first_look = False

            if job.status == JobStatus.PENDING:
                delay = (job.run_after - utcnow()).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)
                    continue

                outcome = await self.run_job(
                    job_id, stage_index, total_stages, max_attempts, announce_completion=False
                )
                if outcome.state in ("completed", "failed"):
                    return outcome
                if outcome.state == "retry":
                    continue

            if loop.time() >= deadline:
                error = f"Timed out waiting for {stage_label(job.type)}"
                logger.error("%s (job %s, status %s)", error, job_id, job.status.value)
                self._emit(job, EventType.ERROR, error, self._stage_data(job, stage_index, total_stages))
                return StageOutcome(job_id=job_id, state="failed", job=job, error=error)

            await asyncio.sleep(self.config.jobs.stage_poll_interval_s)

    async def run_pipeline(
        self,
        job_ids: List[str],
        content_id: str,
        max_attempts: Optional[int] = None,
    ) -> PipelineResult:
        """Run stage jobs strictly in order.

        Completed stages are skipped, so re-invoking a pipeline resumes it.
        The run stops at the first stage that ends failed.
        """
        result = PipelineResult(content_id=content_id, succeeded=False)
        total = len(job_ids)

        for index, job_id in enumerate(job_ids):
            outcome = await self._drive_stage(job_id, index, total, max_attempts)

            if outcome.state == "skipped":
                result.skipped_jobs.append(job_id)
            elif outcome.state == "completed":
                result.completed_jobs.append(job_id)
            else:
                result.failed_job = job_id
                result.error = outcome.error
                logger.error("Pipeline for %s stopped at job %s: %s", content_id, job_id, outcome.error)
                return result

        result.succeeded = True
        logger.info("Pipeline for %s finished (%d run, %d skipped)",
                    content_id, len(result.completed_jobs), len(result.skipped_jobs))
        self.streaming.send_complete(
            content_id,
            "Processing complete",
            {
                "content_id": content_id,
                "job_ids": list(job_ids),
                "completed_jobs": len(result.completed_jobs),
                "skipped_jobs": len(result.skipped_jobs),
            },
        )
        return result

    def dependent_chain(self, job: Job) -> List[str]:
        """``job`` followed by the outstanding stages waiting on it, in order."""
        ids = [job.id]
        if not job.content_id:
            return ids

        waiting = {
            other.depends_on: other
            for other in self.store.jobs_for_content(job.content_id)
            if other.depends_on and other.status in (JobStatus.PENDING, JobStatus.PROCESSING)
        }
        current = job.id
        while current in waiting and waiting[current].id not in ids:
            current = waiting[current].id
            ids.append(current)
        return ids

    def start_pipeline(
        self,
        job_ids: List[str],
        content_id: str,
        max_attempts: Optional[int] = None,
    ) -> asyncio.Task:
        """Run a pipeline as a detached task that outlives the caller."""
        task = asyncio.create_task(
            self._run_detached(job_ids, content_id, max_attempts),
            name=f"pipeline-{content_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_detached(
        self, job_ids: List[str], content_id: str, max_attempts: Optional[int]
    ) -> Optional[PipelineResult]:
        try:
            return await self.run_pipeline(job_ids, content_id, max_attempts)
        except Exception as e:
            # Nobody awaits this task; record the crash where users see it
            logger.exception("Pipeline task for %s crashed", content_id)
            self.contents.update_status(content_id, ContentStatus.ERROR, f"Processing crashed: {e}")
            self.streaming.send_error(content_id, f"Processing crashed: {e}", {"content_id": content_id})
            return None

    @property
    def active_pipelines(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel detached pipeline tasks; jobs they held go back to pending."""
        tasks = list(self._tasks)
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=timeout)
