"""Handler registry and the job error taxonomy.

A handler is an async callable ``(payload, progress) -> dict``. It reports
failure by raising; ``classify_error`` decides whether the raised exception
is retriable:

- JobError subclasses carry an explicit ``retriable`` flag
- Timeouts and I/O errors (OSError, ConnectionError) are transient
- FileNotFoundError, PermissionError and bad input (ValueError, KeyError,
  TypeError) are permanent
- Anything else is treated as transient
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .models import JobType

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str, Optional[Dict[str, Any]]], None]
Handler = Callable[[Dict[str, Any], ProgressCallback], Awaitable[Dict[str, Any]]]


class JobError(Exception):
    """Handler failure with an explicit retry classification."""

    def __init__(self, message: str, retriable: bool = True):
        super().__init__(message)
        self.message = message
        self.retriable = retriable


class FatalJobError(JobError):
    """Validation or missing-prerequisite failure; never retried."""

    def __init__(self, message: str):
        super().__init__(message, retriable=False)


class TransientJobError(JobError):
    """Network, rate-limit or provider hiccup; retried with backoff."""

    def __init__(self, message: str):
        super().__init__(message, retriable=True)


class JobNotFoundError(LookupError):
    """No job with the requested id."""


class JobNotRetriableError(Exception):
    """Operator retry rejected: job not failed or attempts exhausted."""


PERMANENT_ERRORS = (FileNotFoundError, PermissionError, ValueError, KeyError, TypeError)


def classify_error(exc: BaseException) -> Tuple[str, bool]:
    """Map an exception raised by a handler to (message, retriable)."""
    if isinstance(exc, JobError):
        return exc.message, exc.retriable

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return f"Timed out: {exc}" if str(exc) else "Handler timed out", True

    # Checked before OSError: FileNotFoundError/PermissionError subclass it
    if isinstance(exc, PERMANENT_ERRORS):
        return f"{type(exc).__name__}: {exc}", False

    if isinstance(exc, (OSError, ConnectionError)):
        return f"{type(exc).__name__}: {exc}", True

    return f"{type(exc).__name__}: {exc}", True


class HandlerRegistry:
    """Map from JobType to its handler.

    Usage:
        registry = HandlerRegistry()

        @registry.handler(JobType.TRANSCRIBE)
        async def transcribe(payload, progress):
            ...
    """

    def __init__(self):
        self._handlers: Dict[JobType, Handler] = {}

    def register(self, job_type: JobType, handler: Handler) -> None:
        job_type = JobType(job_type)
        if job_type in self._handlers:
            logger.debug("Replacing handler for %s", job_type.value)
        self._handlers[job_type] = handler

    def handler(self, job_type: JobType) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.register(job_type, fn)
            return fn
        return decorator

    def get(self, job_type: JobType) -> Handler:
        try:
            return self._handlers[JobType(job_type)]
        except (KeyError, ValueError):
            raise FatalJobError(f"No handler registered for job type: {job_type}") from None

    def __contains__(self, job_type) -> bool:
        try:
            return JobType(job_type) in self._handlers
        except ValueError:
            return False

    def missing(self) -> List[JobType]:
        return [job_type for job_type in JobType if job_type not in self._handlers]

    def ensure_complete(self) -> None:
        """Fail fast at startup when a JobType has no handler."""
        missing = self.missing()
        if missing:
            names = ", ".join(job_type.value for job_type in missing)
            raise RuntimeError(f"Handlers missing for job types: {names}")
