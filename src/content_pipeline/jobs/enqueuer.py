"""Enqueuer: turns a content item into pending job rows.

Pipeline rows are created up front, one per planned stage, each pointing at
the previous stage's job through ``depends_on``. The store's claim refuses a
job whose predecessor is not completed, which keeps stages of one run in plan
order no matter which executor picks them up.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import PipelineConfig
from .backends import ContentStore, JobStore
from .dedupe import natural_dedupe_key, reprocess_dedupe_key
from .models import Content, ContentStatus, Job, JobItem, JobType, utcnow
from .planner import derived_artifacts, plan_stages, resolve_reprocess_stages, stage_start_status

logger = logging.getLogger(__name__)


class EnqueueResult(BaseModel):
    """Job rows backing one pipeline run, in plan order."""

    content_id: str
    stages: List[JobType] = Field(default_factory=list)
    job_ids: List[str] = Field(default_factory=list)
    created: int = 0
    reused: int = 0

    @property
    def empty(self) -> bool:
        return not self.job_ids


class ContentNotFoundError(LookupError):
    """No content record with the requested id."""


class Enqueuer:
    def __init__(self, store: JobStore, contents: ContentStore, config: PipelineConfig):
        self.store = store
        self.contents = contents
        self.config = config

    def _require_content(self, content_id: str) -> Content:
        content = self.contents.get(content_id)
        if content is None:
            raise ContentNotFoundError(f"Content not found: {content_id}")
        return content

    def _stage_payload(
        self, content: Content, tenant_id: Optional[str], index: int, total: int, **extra: Any
    ) -> Dict[str, Any]:
        payload = {
            "content_id": content.id,
            "tenant_id": tenant_id,
            "content_type": content.content_type,
            "file_type": content.file_type,
            "storage_path": content.storage_path,
            "stage_index": index,
            "total_stages": total,
            "pipeline": True,
        }
        payload.update(extra)
        return payload

    def _insert_or_reuse(self, item: JobItem, result: EnqueueResult) -> Job:
        job = self.store.insert(item)
        if job is not None:
            result.created += 1
            return job

        existing = self.store.find_outstanding(item.dedupe_key)
        if existing is None:
            # The outstanding job finished between insert and lookup
            job = self.store.insert(item)
            if job is None:
                raise RuntimeError(f"Could not enqueue {item.type.value} for {item.content_id}")
            result.created += 1
            return job

        logger.info("Reusing outstanding %s job %s", item.type.value, existing.id)
        if existing.depends_on != item.depends_on and self.store.relink(existing.id, item.depends_on):
            # A leftover row from a failed run would otherwise wait on that run
            existing = self.store.get(existing.id)
        result.reused += 1
        return existing

    def _reset_content(self, content: Content, stages: List[JobType]) -> None:
        status = stage_start_status(stages[0]) if stages else None
        if status is not None:
            self.contents.update_status(content.id, status)
        self.contents.clear_error(content.id)

    def enqueue_pipeline(
        self,
        content_id: str,
        tenant_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> EnqueueResult:
        """Insert one pending job per planned stage.

        A stage whose natural dedupe key is held by an outstanding job reuses
        that job instead of inserting a second row.

        Raises:
            ContentNotFoundError: Unknown content id
        """
        content = self._require_content(content_id)
        tenant_id = tenant_id or content.tenant_id
        stages = plan_stages(content.content_type, content.file_type)
        result = EnqueueResult(content_id=content_id, stages=stages)

        if not stages:
            logger.info(
                "No processing planned for %s (%s/%s), marking completed",
                content_id, content.content_type, content.file_type,
            )
            self.contents.update_status(content_id, ContentStatus.COMPLETED)
            self.contents.clear_error(content_id)
            return result

        previous_id = None
        for index, job_type in enumerate(stages):
            item = JobItem(
                type=job_type,
                payload=self._stage_payload(content, tenant_id, index, len(stages)),
                content_id=content_id,
                tenant_id=tenant_id,
                dedupe_key=natural_dedupe_key(job_type, content_id),
                depends_on=previous_id,
                max_attempts=max_attempts or self.config.jobs.max_attempts,
            )
            job = self._insert_or_reuse(item, result)
            result.job_ids.append(job.id)
            previous_id = job.id

        if result.created or content.status == ContentStatus.ERROR:
            # A fully reused plan is already under way; its stages own the status
            self._reset_content(content, stages)
        logger.info(
            "Enqueued pipeline for %s: %s (%d new, %d reused)",
            content_id, [s.value for s in stages], result.created, result.reused,
        )
        return result

    def enqueue_reprocess(
        self,
        content_id: str,
        from_stage: str = "all",
        tenant_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> EnqueueResult:
        """Re-run the pipeline from ``from_stage`` with fresh dedupe keys.

        Derived artifacts the restarted stages regenerate are deleted first so
        stale output cannot leak into the new run. Rows of earlier stages are
        left untouched.

        Raises:
            ContentNotFoundError: Unknown content id
            ValueError: Stage unknown or not part of this content's plan
        """
        content = self._require_content(content_id)
        tenant_id = tenant_id or content.tenant_id
        plan = plan_stages(content.content_type, content.file_type)
        stages = resolve_reprocess_stages(plan, from_stage)
        result = EnqueueResult(content_id=content_id, stages=stages)

        if not stages:
            raise ValueError(f"Nothing to reprocess for content {content_id}")

        stale = []
        for job_type in stages:
            stale.extend(kind for kind in derived_artifacts(job_type) if kind not in stale)
        self.contents.delete_artifacts(content_id, stale)

        now = utcnow()
        previous_id = None
        for index, job_type in enumerate(stages):
            item = JobItem(
                type=job_type,
                payload=self._stage_payload(
                    content,
                    tenant_id,
                    index,
                    len(stages),
                    reprocess=True,
                    # Frames sit outside the linear plan and never finish the content
                    pipeline=job_type != JobType.EXTRACT_FRAMES,
                ),
                content_id=content_id,
                tenant_id=tenant_id,
                dedupe_key=reprocess_dedupe_key(job_type, content_id, now),
                depends_on=previous_id,
                max_attempts=max_attempts or self.config.jobs.max_attempts,
            )
            job = self._insert_or_reuse(item, result)
            result.job_ids.append(job.id)
            previous_id = job.id

        self._reset_content(content, stages)
        if stage_start_status(stages[0]) is None and content.status == ContentStatus.ERROR:
            # Embeddings/frames only: upstream artifacts are intact
            self.contents.update_status(content_id, ContentStatus.TRANSCRIBED)

        logger.info("Enqueued reprocess of %s from %s: %s",
                    content_id, from_stage, [s.value for s in stages])
        return result

    def enqueue_job(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        content_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> EnqueueResult:
        """Insert a standalone job for the poller (frames, connector syncs, ...)."""
        job_type = JobType(job_type)
        if dedupe_key is None and content_id is not None:
            dedupe_key = natural_dedupe_key(job_type, content_id)

        payload = dict(payload)
        payload.setdefault("content_id", content_id)
        payload.setdefault("tenant_id", tenant_id)

        result = EnqueueResult(content_id=content_id or "", stages=[job_type])
        item = JobItem(
            type=job_type,
            payload=payload,
            content_id=content_id,
            tenant_id=tenant_id,
            dedupe_key=dedupe_key,
            max_attempts=max_attempts or self.config.jobs.max_attempts,
        )
        job = self._insert_or_reuse(item, result)
        result.job_ids.append(job.id)
        return result
