"""Abstract base classes for the job store and the content accessor.

These interfaces keep the orchestrator independent of the storage engine.
The bundled implementation is SQLite (see ``sqlite_backend``); a shared
relational store only has to honour the same conditional-update contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from .models import Content, Job, JobItem, StateTransition


class JobStore(ABC):
    """Durable record of work items.

    Implementations must provide:
    - An atomic claim (conditional pending → processing update)
    - Dedup of outstanding jobs by ``dedupe_key``
    - Status updates that only apply from the expected source status
    """

    @abstractmethod
    def insert(self, item: "JobItem") -> Optional["Job"]:
        """Insert a pending job.

        Returns:
            The stored Job, or None if an outstanding job already holds
            ``item.dedupe_key``.
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional["Job"]:
        """Fetch one job by id."""

    @abstractmethod
    def find_outstanding(self, dedupe_key: str) -> Optional["Job"]:
        """Return the pending/processing job holding ``dedupe_key``, if any."""

    @abstractmethod
    def claim(self, job_id: str, worker_id: str) -> Optional["Job"]:
        """Atomically move a job from pending to processing.

        Implementation notes:
        - MUST be a single conditional update, never read-then-write
        - Succeeds only if the job is pending, due (run_after <= now) and its
          predecessor (``depends_on``) is completed
        - Sets started_at and worker_id, clears completed_at
        """

    @abstractmethod
    def relink(self, job_id: str, depends_on: Optional[str]) -> bool:
        """Point a pending job at a new predecessor. False if not pending."""

    @abstractmethod
    def list_due(self, limit: int) -> List["Job"]:
        """Pending jobs that a claim would currently accept, oldest first."""

    @abstractmethod
    def update_progress(self, job_id: str, percent: int, message: str) -> None:
        """Update scratch progress fields of a processing job."""

    @abstractmethod
    def complete(self, job_id: str, result: Dict[str, Any]) -> Optional["Job"]:
        """processing → completed. Returns None if the job was not processing."""

    @abstractmethod
    def schedule_retry(
        self, job_id: str, attempt_count: int, run_after: datetime, error: str
    ) -> Optional["Job"]:
        """processing → pending with a new attempt count and run_after."""

    @abstractmethod
    def fail(self, job_id: str, attempt_count: int, error: str) -> Optional["Job"]:
        """processing → failed."""

    @abstractmethod
    def reset_for_retry(self, job_id: str) -> Optional["Job"]:
        """failed → pending, only while attempt_count < max_attempts."""

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> bool:
        """Refresh the liveness timestamp of a processing job."""

    @abstractmethod
    def release(self, job_id: str, reason: str = "Released by executor") -> Optional["Job"]:
        """processing → pending without counting the attempt (interrupted run)."""

    @abstractmethod
    def reset_stale(self, stale_after_s: float) -> int:
        """Crash recovery: processing jobs silent for ``stale_after_s`` go back to pending.

        Returns:
            Count of reset jobs
        """

    @abstractmethod
    def jobs_for_content(self, content_id: str) -> List["Job"]:
        """All jobs of a content item, oldest first."""

    @abstractmethod
    def has_pending_dependents(self, job_id: str) -> bool:
        """True if an outstanding job waits on ``job_id``."""

    @abstractmethod
    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        content_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List["Job"], int]:
        """Paginated listing for operators. Returns (page, total)."""

    @abstractmethod
    def metrics(self) -> Dict[str, Any]:
        """Counts by status and average duration by job type."""

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail of a job."""


class ContentStore(ABC):
    """Accessor for content records and the artifacts handlers derive from them."""

    @abstractmethod
    def create(self, content: "Content") -> "Content":
        """Insert a content record."""

    @abstractmethod
    def get(self, content_id: str) -> Optional["Content"]:
        """Fetch a content record."""

    @abstractmethod
    def update_status(
        self, content_id: str, status: str, error_message: Optional[str] = None
    ) -> None:
        """Set the coarse status (and the error message when given)."""

    @abstractmethod
    def clear_error(self, content_id: str) -> None:
        """Clear error_message."""

    @abstractmethod
    def update_metadata(self, content_id: str, values: Dict[str, Any]) -> None:
        """Merge ``values`` into the metadata map."""

    @abstractmethod
    def delete(self, content_id: str) -> bool:
        """Hard-delete a content record; jobs and artifacts cascade."""

    @abstractmethod
    def save_transcript(
        self, content_id: str, text: str, segments: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        """Store the transcript, replacing any previous one."""

    @abstractmethod
    def get_transcript(self, content_id: str) -> Optional[Dict[str, Any]]:
        """Return {'text', 'segments'} or None."""

    @abstractmethod
    def save_document(self, content_id: str, markdown: str) -> None:
        """Store the generated document, replacing any previous one."""

    @abstractmethod
    def get_document(self, content_id: str) -> Optional[Dict[str, Any]]:
        """Return {'markdown'} or None."""

    @abstractmethod
    def replace_chunks(self, content_id: str, chunks: Iterable[Dict[str, Any]]) -> int:
        """Replace embedding chunks. Returns the number stored."""

    @abstractmethod
    def count_chunks(self, content_id: str) -> int:
        """Number of embedding chunks."""

    @abstractmethod
    def replace_frames(self, content_id: str, frames: Iterable[Dict[str, Any]]) -> int:
        """Replace extracted frames. Returns the number stored."""

    @abstractmethod
    def list_frames(self, content_id: str) -> List[Dict[str, Any]]:
        """Extracted frames ordered by frame number."""

    @abstractmethod
    def delete_artifacts(self, content_id: str, kinds: Iterable[str]) -> None:
        """Delete derived data: any of transcript, document, chunks, frames."""
