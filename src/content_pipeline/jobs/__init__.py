"""Job store, planner and executor for content processing pipelines."""

from .models import (
    Content,
    ContentStatus,
    ContentType,
    FileType,
    Job,
    JobItem,
    JobStatus,
    JobType,
    PipelineResult,
    StageOutcome,
    StateTransition,
)
from .backends import ContentStore, JobStore
from .sqlite_backend import SQLiteContentStore, SQLiteJobStore
from .dedupe import natural_dedupe_key, reprocess_dedupe_key
from .planner import plan_stages, resolve_reprocess_stages
from .registry import (
    FatalJobError,
    HandlerRegistry,
    JobError,
    JobNotFoundError,
    JobNotRetriableError,
    TransientJobError,
    classify_error,
)
from .retry import RetryController, RetryDecision
from .enqueuer import ContentNotFoundError, Enqueuer, EnqueueResult
from .executor import JobExecutor
from .worker import JobPoller

__all__ = [
    "Content",
    "ContentStatus",
    "ContentType",
    "FileType",
    "Job",
    "JobItem",
    "JobStatus",
    "JobType",
    "PipelineResult",
    "StageOutcome",
    "StateTransition",
    "ContentStore",
    "JobStore",
    "SQLiteContentStore",
    "SQLiteJobStore",
    "natural_dedupe_key",
    "reprocess_dedupe_key",
    "plan_stages",
    "resolve_reprocess_stages",
    "FatalJobError",
    "HandlerRegistry",
    "JobError",
    "JobNotFoundError",
    "JobNotRetriableError",
    "TransientJobError",
    "classify_error",
    "RetryController",
    "RetryDecision",
    "ContentNotFoundError",
    "Enqueuer",
    "EnqueueResult",
    "JobExecutor",
    "JobPoller",
]
