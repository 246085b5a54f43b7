"""Dedupe key construction for outstanding-job deduplication.

Two key families:
1. Natural key: ``{type}:{content_id}``. At most one outstanding job per
   stage and content; a second enqueue reuses the first.
2. Reprocess key: ``{type}:{content_id}:{epoch_us}:{nonce}``. Never repeats,
   so a forced reprocess is never folded into an outstanding job.
"""

import uuid
from datetime import datetime
from typing import Optional

from .models import JobType, utcnow


def _type_value(job_type) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


def natural_dedupe_key(job_type, content_id: str) -> str:
    """Key shared by every enqueue of the same stage for the same content."""
    return f"{_type_value(job_type)}:{content_id}"


def reprocess_dedupe_key(job_type, content_id: str, now: Optional[datetime] = None) -> str:
    """Unique key for the reprocess path.

    The timestamp keeps keys sortable in listings; the random suffix keeps
    two requests issued in the same microsecond apart.
    """
    now = now or utcnow()
    epoch_us = int(now.timestamp() * 1_000_000)
    return f"{natural_dedupe_key(job_type, content_id)}:{epoch_us}:{uuid.uuid4().hex[:8]}"
