"""Pydantic models for job pipeline data structures.

This module defines the type-safe models used throughout the job system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time used for every job timestamp."""
    return datetime.now(timezone.utc)


class JobType(str, Enum):
    """Closed set of work item types understood by the handler registry."""

    TRANSCRIBE = "transcribe"
    EXTRACT_AUDIO = "extract_audio"
    EXTRACT_TEXT_PDF = "extract_text_pdf"
    EXTRACT_TEXT_DOCX = "extract_text_docx"
    PROCESS_TEXT_NOTE = "process_text_note"
    DOC_GENERATE = "doc_generate"
    GENERATE_EMBEDDINGS = "generate_embeddings"
    EXTRACT_FRAMES = "extract_frames"
    SYNC_CONNECTOR = "sync_connector"
    PROCESS_IMPORTED_DOC = "process_imported_doc"
    PROCESS_WEBHOOK = "process_webhook"
    EXPORT_USER_DATA = "export_user_data"


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → processing     (atomic claim)
        processing → completed   (handler succeeded)
        processing → pending     (retriable failure, attempts left)
        processing → failed      (fatal failure or attempts exhausted)
        failed → pending         (operator retry, attempts left)
    """

    PENDING = "pending"  # Waiting for run_after and its predecessor
    PROCESSING = "processing"  # Claimed by exactly one executor
    COMPLETED = "completed"  # Handler returned a result
    FAILED = "failed"  # Terminal until an operator retry


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)
OUTSTANDING_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class ContentStatus(str, Enum):
    """Coarse status of a content item, updated as stages move."""

    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    DOC_GENERATING = "doc_generating"
    COMPLETED = "completed"
    ERROR = "error"


class ContentType(str, Enum):
    RECORDING = "recording"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    TEXT = "text"


class FileType(str, Enum):
    MP4 = "mp4"
    MOV = "mov"
    WEBM = "webm"
    AVI = "avi"
    MP3 = "mp3"
    WAV = "wav"
    M4A = "m4a"
    OGG = "ogg"
    PDF = "pdf"
    DOCX = "docx"
    DOC = "doc"
    TXT = "txt"
    MD = "md"


class JobItem(BaseModel):
    """Fields for inserting a new job row."""

    type: JobType = Field(..., description="Handler key")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Handler input")
    content_id: Optional[str] = Field(default=None, description="Owning content item")
    tenant_id: Optional[str] = Field(default=None, description="Owning tenant")
    dedupe_key: Optional[str] = Field(default=None, description="Outstanding-job dedup key")
    depends_on: Optional[str] = Field(
        default=None, description="Job that must be completed before this one is claimable"
    )
    max_attempts: int = Field(default=3, ge=1, description="Max attempt budget")
    run_after: Optional[datetime] = Field(default=None, description="Earliest start time")


class Job(BaseModel):
    """A persisted unit of pipeline work."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(..., description="Unique job identifier (UUID)")
    type: JobType = Field(..., description="Handler key")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Handler input")
    content_id: Optional[str] = Field(default=None, description="Owning content item")
    tenant_id: Optional[str] = Field(default=None, description="Owning tenant")
    depends_on: Optional[str] = Field(default=None, description="Previous stage's job id")
    attempt_count: int = Field(default=0, ge=0, description="Finished attempts")
    max_attempts: int = Field(default=3, ge=1, description="Max attempt budget")
    dedupe_key: Optional[str] = Field(default=None, description="Outstanding-job dedup key")
    run_after: datetime = Field(default_factory=utcnow, description="Earliest start time")
    created_at: datetime = Field(default_factory=utcnow, description="Queue time")
    started_at: Optional[datetime] = Field(default=None, description="Current attempt start")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal time")
    worker_id: Optional[str] = Field(default=None, description="Executor that claimed job")
    last_heartbeat: Optional[datetime] = Field(default=None, description="Liveness signal while processing")
    progress_percent: Optional[int] = Field(default=None, ge=0, le=100)
    progress_message: Optional[str] = Field(default=None)
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler output")
    error_message: Optional[str] = Field(default=None, description="Last error (truncated)")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.attempt_count < self.max_attempts

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class Content(BaseModel):
    """Content record as seen by the orchestrator (owned elsewhere)."""

    id: str
    tenant_id: Optional[str] = None
    content_type: str
    file_type: Optional[str] = None
    status: ContentStatus = ContentStatus.UPLOADED
    title: Optional[str] = None
    storage_path: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class StageOutcome(BaseModel):
    """Result of one run_job call.

    ``state`` is one of:
        completed      handler succeeded
        retry          retriable failure, job back to pending until run_after
        failed         terminal failure, pipeline must stop
        not_claimed    someone else holds the job, or it is not yet eligible
    """

    job_id: str
    state: str
    job: Optional[Job] = None
    error: Optional[str] = None
    run_after: Optional[datetime] = None


class PipelineResult(BaseModel):
    """Summary of a run_pipeline call."""

    content_id: str
    succeeded: bool
    completed_jobs: List[str] = Field(default_factory=list)
    skipped_jobs: List[str] = Field(default_factory=list)
    failed_job: Optional[str] = None
    error: Optional[str] = None


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Executor that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
