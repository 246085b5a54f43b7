"""SQLite implementations of JobStore and ContentStore.

This module provides the local-first job store using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE + UPDATE...RETURNING for the atomic claim
- Exponential backoff retry for database lock handling
- A partial unique index so a dedupe key is unique among outstanding jobs
"""

import json
import logging
import sqlite3
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlite_utils import Database

from .backends import ContentStore, JobStore
from .models import Content, Job, JobItem, JobStatus, StateTransition, utcnow

logger = logging.getLogger(__name__)

ERROR_MAX_CHARS = 500

# SQLite schema SQL
SCHEMA_SQL = """
-- Content records (owned by the upload/library surface)
CREATE TABLE IF NOT EXISTS content (
    id TEXT PRIMARY KEY,
    tenant_id TEXT,
    content_type TEXT NOT NULL,
    file_type TEXT,
    status TEXT NOT NULL,
    title TEXT,
    storage_path TEXT,
    error_message TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

-- Work items
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    content_id TEXT REFERENCES content(id) ON DELETE CASCADE,
    tenant_id TEXT,
    depends_on TEXT,
    payload TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    dedupe_key TEXT,
    run_after TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    progress_percent INTEGER,
    progress_message TEXT,
    result TEXT,
    error_message TEXT,
    CHECK (attempt_count <= max_attempts)
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_run_after ON jobs(status, run_after);
CREATE INDEX IF NOT EXISTS idx_jobs_content ON jobs(content_id, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_depends_on ON jobs(depends_on);
CREATE INDEX IF NOT EXISTS idx_jobs_type_status ON jobs(type, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_outstanding_dedupe
    ON jobs(dedupe_key)
    WHERE dedupe_key IS NOT NULL AND status IN ('pending', 'processing');

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);

-- Derived artifacts
CREATE TABLE IF NOT EXISTS transcripts (
    content_id TEXT PRIMARY KEY REFERENCES content(id) ON DELETE CASCADE,
    text TEXT NOT NULL,
    segments TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    content_id TEXT PRIMARY KEY REFERENCES content(id) ON DELETE CASCADE,
    markdown TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_id TEXT NOT NULL REFERENCES content(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    source TEXT,
    text TEXT NOT NULL,
    embedding TEXT
);

CREATE INDEX IF NOT EXISTS idx_chunks_content ON chunks(content_id, chunk_index);

CREATE TABLE IF NOT EXISTS frames (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_id TEXT NOT NULL REFERENCES content(id) ON DELETE CASCADE,
    frame_number INTEGER NOT NULL,
    time_sec REAL,
    storage_path TEXT,
    description TEXT
);

CREATE INDEX IF NOT EXISTS idx_frames_content ON frames(content_id, frame_number);
"""

ARTIFACT_TABLES = {
    "transcript": "transcripts",
    "document": "documents",
    "chunks": "chunks",
    "frames": "frames",
}


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so text comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _loads(value: Optional[str], default):
    return json.loads(value) if value else default


class SQLiteContentStore(ContentStore):
    """SQLite-based content accessor.

    Owns the database connection and the schema; SQLiteJobStore shares it so
    that jobs cascade with their content.
    """

    def __init__(self, db_path: str):
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file

        Creates schema if database doesn't exist.
        Enables WAL mode and foreign keys.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = Database(str(self.db_path))

        # Enable WAL mode for better concurrent performance
        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.execute("PRAGMA foreign_keys=ON")
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def _row_to_content(self, row: Dict[str, Any]) -> Content:
        return Content(
            id=row["id"],
            tenant_id=row.get("tenant_id"),
            content_type=row["content_type"],
            file_type=row.get("file_type"),
            status=row["status"],
            title=row.get("title"),
            storage_path=row.get("storage_path"),
            error_message=row.get("error_message"),
            metadata=_loads(row.get("metadata"), {}),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row.get("updated_at")),
        )

    def create(self, content: Content) -> Content:
        self.db["content"].insert({
            "id": content.id,
            "tenant_id": content.tenant_id,
            "content_type": content.content_type,
            "file_type": content.file_type,
            "status": content.status.value,
            "title": content.title,
            "storage_path": content.storage_path,
            "error_message": content.error_message,
            "metadata": json.dumps(content.metadata),
            "created_at": _ts(content.created_at),
            "updated_at": _ts(content.updated_at or content.created_at),
        })
        return self.get(content.id)

    def get(self, content_id: str) -> Optional[Content]:
        rows = list(self.db["content"].rows_where("id = ?", [content_id]))
        if not rows:
            return None
        return self._row_to_content(rows[0])

    def update_status(
        self, content_id: str, status: str, error_message: Optional[str] = None
    ) -> None:
        status = getattr(status, "value", status)
        with self.db.conn:
            if error_message is None:
                self.db.execute(
                    "UPDATE content SET status = ?, updated_at = ? WHERE id = ?",
                    (status, _ts(utcnow()), content_id),
                )
            else:
                self.db.execute(
                    "UPDATE content SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
                    (status, error_message[:ERROR_MAX_CHARS], _ts(utcnow()), content_id),
                )

    def clear_error(self, content_id: str) -> None:
        with self.db.conn:
            self.db.execute(
                "UPDATE content SET error_message = NULL, updated_at = ? WHERE id = ?",
                (_ts(utcnow()), content_id),
            )

    def update_metadata(self, content_id: str, values: Dict[str, Any]) -> None:
        content = self.get(content_id)
        if content is None:
            return
        merged = dict(content.metadata)
        merged.update(values)
        with self.db.conn:
            self.db.execute(
                "UPDATE content SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(merged), _ts(utcnow()), content_id),
            )

    def delete(self, content_id: str) -> bool:
        with self.db.conn:
            cursor = self.db.execute("DELETE FROM content WHERE id = ?", (content_id,))
        return cursor.rowcount > 0

    def save_transcript(
        self, content_id: str, text: str, segments: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        self.db["transcripts"].insert(
            {
                "content_id": content_id,
                "text": text,
                "segments": json.dumps(segments or []),
                "created_at": _ts(utcnow()),
            },
            pk="content_id",
            replace=True,
        )

    def get_transcript(self, content_id: str) -> Optional[Dict[str, Any]]:
        rows = list(self.db["transcripts"].rows_where("content_id = ?", [content_id]))
        if not rows:
            return None
        return {"text": rows[0]["text"], "segments": _loads(rows[0]["segments"], [])}

    def save_document(self, content_id: str, markdown: str) -> None:
        self.db["documents"].insert(
            {"content_id": content_id, "markdown": markdown, "created_at": _ts(utcnow())},
            pk="content_id",
            replace=True,
        )

    def get_document(self, content_id: str) -> Optional[Dict[str, Any]]:
        rows = list(self.db["documents"].rows_where("content_id = ?", [content_id]))
        if not rows:
            return None
        return {"markdown": rows[0]["markdown"]}

    def replace_chunks(self, content_id: str, chunks: Iterable[Dict[str, Any]]) -> int:
        rows = [
            {
                "content_id": content_id,
                "chunk_index": i,
                "source": chunk.get("source"),
                "text": chunk["text"],
                "embedding": json.dumps(chunk.get("embedding")),
            }
            for i, chunk in enumerate(chunks)
        ]
        with self.db.conn:
            self.db.execute("DELETE FROM chunks WHERE content_id = ?", (content_id,))
            if rows:
                self.db["chunks"].insert_all(rows)
        return len(rows)

    def count_chunks(self, content_id: str) -> int:
        return self.db.execute(
            "SELECT COUNT(*) FROM chunks WHERE content_id = ?", (content_id,)
        ).fetchone()[0]

    def replace_frames(self, content_id: str, frames: Iterable[Dict[str, Any]]) -> int:
        rows = [
            {
                "content_id": content_id,
                "frame_number": frame["frame_number"],
                "time_sec": frame.get("time_sec"),
                "storage_path": frame.get("storage_path"),
                "description": frame.get("description"),
            }
            for frame in frames
        ]
        with self.db.conn:
            self.db.execute("DELETE FROM frames WHERE content_id = ?", (content_id,))
            if rows:
                self.db["frames"].insert_all(rows)
        return len(rows)

    def list_frames(self, content_id: str) -> List[Dict[str, Any]]:
        return [
            dict(row)
            for row in self.db["frames"].rows_where(
                "content_id = ?", [content_id], order_by="frame_number"
            )
        ]

    def delete_artifacts(self, content_id: str, kinds: Iterable[str]) -> None:
        with self.db.conn:
            for kind in kinds:
                table = ARTIFACT_TABLES.get(kind)
                if table is None:
                    raise ValueError(f"Unknown artifact kind: {kind}")
                self.db.execute(f"DELETE FROM {table} WHERE content_id = ?", (content_id,))


class SQLiteJobStore(JobStore):
    """SQLite-based job store with an atomic claim.

    Features:
    - Atomic claim via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Predecessor check inside the claim keeps stages of a run in order
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock from transaction start
    - Every status update names its expected source status, so a lost race
      updates zero rows instead of clobbering another executor's work
    """

    def __init__(self, contents: SQLiteContentStore):
        """Initialize job store.

        Args:
            contents: SQLiteContentStore instance (shares same database)
        """
        self.contents = contents
        self.db = contents.db

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        return Job(
            id=row["id"],
            type=row["type"],
            status=row["status"],
            payload=_loads(row.get("payload"), {}),
            content_id=row.get("content_id"),
            tenant_id=row.get("tenant_id"),
            depends_on=row.get("depends_on"),
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            dedupe_key=row.get("dedupe_key"),
            run_after=_parse_ts(row["run_after"]),
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row.get("started_at")),
            completed_at=_parse_ts(row.get("completed_at")),
            last_heartbeat=_parse_ts(row.get("last_heartbeat")),
            worker_id=row.get("worker_id"),
            progress_percent=row.get("progress_percent"),
            progress_message=row.get("progress_message"),
            result=_loads(row.get("result"), None),
            error_message=row.get("error_message"),
        )

    def _fetch_returning(self, cursor) -> Optional[Job]:
        row = cursor.fetchone()
        if row is None:
            return None
        columns = [c[0] for c in cursor.description]
        return self._row_to_job(dict(zip(columns, row)))

    def _update_returning(self, sql: str, params: Tuple) -> Optional[Job]:
        with self.db.conn:
            cursor = self.db.execute(sql, params)
            return self._fetch_returning(cursor)

    def insert(self, item: JobItem) -> Optional[Job]:
        """Insert a pending job, or return None on an outstanding dedupe key."""
        now = utcnow()
        job_id = str(uuid.uuid4())
        row = {
            "id": job_id,
            "type": item.type.value,
            "status": JobStatus.PENDING.value,
            "content_id": item.content_id,
            "tenant_id": item.tenant_id,
            "depends_on": item.depends_on,
            "payload": json.dumps(item.payload),
            "attempt_count": 0,
            "max_attempts": item.max_attempts,
            "dedupe_key": item.dedupe_key,
            "run_after": _ts(item.run_after or now),
            "created_at": _ts(now),
        }
        try:
            self.db["jobs"].insert(row)
        except sqlite3.IntegrityError as e:
            if item.dedupe_key and self.find_outstanding(item.dedupe_key) is not None:
                logger.debug("Dedupe key %s already outstanding", item.dedupe_key)
                return None
            raise ValueError(f"Could not insert {item.type.value} job: {e}") from e

        self._log_transition(job_id, None, JobStatus.PENDING.value)
        return self.get(job_id)

    def get(self, job_id: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def find_outstanding(self, dedupe_key: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where(
            "dedupe_key = ? AND status IN (?, ?)",
            [dedupe_key, JobStatus.PENDING.value, JobStatus.PROCESSING.value],
        ))
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def claim(self, job_id: str, worker_id: str) -> Optional[Job]:
        """Atomically claim a job (pending → processing).

        Atomicity: Uses BEGIN IMMEDIATE + conditional UPDATE...RETURNING
        Retry logic: Exponential backoff on database lock
        """
        return self._claim_with_retry(job_id, worker_id, max_retries=3)

    def _claim_with_retry(
        self, job_id: str, worker_id: str, max_retries: int = 3
    ) -> Optional[Job]:
        """Claim with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - BEGIN IMMEDIATE ensures write lock from transaction start
        - The WHERE clause re-checks status, run_after and the predecessor,
          so two claimers can never both see a row come back
        - Exponential backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(max_retries):
            try:
                with self.db.conn:
                    self.db.conn.execute("BEGIN IMMEDIATE")

                    try:
                        now = _ts(utcnow())

                        cursor = self.db.conn.execute("""
                            UPDATE jobs
                            SET status = ?,
                                worker_id = ?,
                                started_at = ?,
                                last_heartbeat = ?,
                                completed_at = NULL,
                                progress_percent = 0,
                                progress_message = ?
                            WHERE id = ?
                              AND status = ?
                              AND run_after <= ?
                              AND (
                                  depends_on IS NULL
                                  OR EXISTS (
                                      SELECT 1 FROM jobs AS prev
                                      WHERE prev.id = jobs.depends_on
                                        AND prev.status = ?
                                  )
                              )
                            RETURNING *
                        """, (
                            JobStatus.PROCESSING.value,
                            worker_id,
                            now,
                            now,
                            "Starting job...",
                            job_id,
                            JobStatus.PENDING.value,
                            now,
                            JobStatus.COMPLETED.value,
                        ))

                        job = self._fetch_returning(cursor)
                        self.db.conn.commit()

                    except Exception:
                        self.db.conn.rollback()
                        raise

                if job:
                    self._log_transition(
                        job.id, JobStatus.PENDING.value, JobStatus.PROCESSING.value,
                        worker_id=worker_id,
                    )
                return job

            except sqlite3.OperationalError as e:
                error_msg = str(e).lower()
                if "database is locked" in error_msg and attempt < max_retries - 1:
                    # Exponential backoff: 100ms, 200ms, 400ms
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        return None

    def relink(self, job_id: str, depends_on: Optional[str]) -> bool:
        with self.db.conn:
            cursor = self.db.execute(
                "UPDATE jobs SET depends_on = ? WHERE id = ? AND status = ?",
                (depends_on, job_id, JobStatus.PENDING.value),
            )
        return cursor.rowcount > 0

    def list_due(self, limit: int) -> List[Job]:
        rows = self.db.execute("""
            SELECT * FROM jobs
            WHERE status = ?
              AND run_after <= ?
              AND (
                  depends_on IS NULL
                  OR EXISTS (
                      SELECT 1 FROM jobs AS prev
                      WHERE prev.id = jobs.depends_on AND prev.status = ?
                  )
              )
            ORDER BY run_after ASC, created_at ASC
            LIMIT ?
        """, (
            JobStatus.PENDING.value,
            _ts(utcnow()),
            JobStatus.COMPLETED.value,
            limit,
        ))
        columns = [c[0] for c in rows.description]
        return [self._row_to_job(dict(zip(columns, row))) for row in rows.fetchall()]

    def update_progress(self, job_id: str, percent: int, message: str) -> None:
        with self.db.conn:
            self.db.execute("""
                UPDATE jobs
                SET progress_percent = ?, progress_message = ?, last_heartbeat = ?
                WHERE id = ? AND status = ?
            """, (
                max(0, min(100, int(percent))),
                message,
                _ts(utcnow()),
                job_id,
                JobStatus.PROCESSING.value,
            ))

    def complete(self, job_id: str, result: Dict[str, Any]) -> Optional[Job]:
        """processing → completed; counts the successful attempt."""
        job = self._update_returning("""
            UPDATE jobs
            SET status = ?,
                completed_at = ?,
                attempt_count = MIN(attempt_count + 1, max_attempts),
                progress_percent = 100,
                result = ?,
                error_message = NULL
            WHERE id = ? AND status = ?
            RETURNING *
        """, (
            JobStatus.COMPLETED.value,
            _ts(utcnow()),
            json.dumps(result),
            job_id,
            JobStatus.PROCESSING.value,
        ))

        if job:
            self._log_transition(
                job_id, JobStatus.PROCESSING.value, JobStatus.COMPLETED.value,
                worker_id=job.worker_id,
            )
        return job

    def schedule_retry(
        self, job_id: str, attempt_count: int, run_after: datetime, error: str
    ) -> Optional[Job]:
        """processing → pending for another attempt no earlier than run_after."""
        error_snippet = error[:ERROR_MAX_CHARS] if error else None

        job = self._update_returning("""
            UPDATE jobs
            SET status = ?,
                attempt_count = ?,
                run_after = ?,
                started_at = NULL,
                completed_at = NULL,
                worker_id = NULL,
                progress_percent = NULL,
                progress_message = ?,
                error_message = ?
            WHERE id = ? AND status = ? AND ? < max_attempts
            RETURNING *
        """, (
            JobStatus.PENDING.value,
            attempt_count,
            _ts(run_after),
            f"Retry scheduled ({attempt_count} attempts so far)",
            error_snippet,
            job_id,
            JobStatus.PROCESSING.value,
            attempt_count,
        ))

        if job:
            self._log_transition(
                job_id, JobStatus.PROCESSING.value, JobStatus.PENDING.value,
                error=error_snippet,
            )
        return job

    def fail(self, job_id: str, attempt_count: int, error: str) -> Optional[Job]:
        """processing → failed (terminal state)."""
        error_snippet = error[:ERROR_MAX_CHARS] if error else None

        job = self._update_returning("""
            UPDATE jobs
            SET status = ?,
                completed_at = ?,
                attempt_count = MIN(?, max_attempts),
                progress_percent = NULL,
                progress_message = 'Failed',
                error_message = ?
            WHERE id = ? AND status = ?
            RETURNING *
        """, (
            JobStatus.FAILED.value,
            _ts(utcnow()),
            attempt_count,
            error_snippet,
            job_id,
            JobStatus.PROCESSING.value,
        ))

        if job:
            self._log_transition(
                job_id, JobStatus.PROCESSING.value, JobStatus.FAILED.value,
                error=error_snippet,
            )
        return job

    def reset_for_retry(self, job_id: str) -> Optional[Job]:
        """failed → pending, due immediately, keeping attempt_count."""
        try:
            job = self._update_returning("""
                UPDATE jobs
                SET status = ?,
                    run_after = ?,
                    started_at = NULL,
                    completed_at = NULL,
                    worker_id = NULL,
                    progress_percent = NULL,
                    progress_message = 'Retry requested'
                WHERE id = ? AND status = ? AND attempt_count < max_attempts
                RETURNING *
            """, (
                JobStatus.PENDING.value,
                _ts(utcnow()),
                job_id,
                JobStatus.FAILED.value,
            ))
        except sqlite3.IntegrityError:
            # Another outstanding job already holds this dedupe key
            logger.info("Retry of %s blocked by an outstanding duplicate", job_id)
            return None

        if job:
            self._log_transition(job_id, JobStatus.FAILED.value, JobStatus.PENDING.value)
        return job

    def update_heartbeat(self, job_id: str) -> bool:
        """Record that the claimer of a processing job is still alive."""
        with self.db.conn:
            cursor = self.db.execute(
                "UPDATE jobs SET last_heartbeat = ? WHERE id = ? AND status = ?",
                (_ts(utcnow()), job_id, JobStatus.PROCESSING.value),
            )
        return cursor.rowcount > 0

    def release(self, job_id: str, reason: str = "Released by executor") -> Optional[Job]:
        """processing → pending for an attempt that was interrupted, not failed.

        The attempt is not counted and the job is due immediately.
        """
        job = self._update_returning("""
            UPDATE jobs
            SET status = ?,
                run_after = ?,
                started_at = NULL,
                last_heartbeat = NULL,
                worker_id = NULL,
                progress_percent = NULL,
                progress_message = ?
            WHERE id = ? AND status = ?
            RETURNING *
        """, (
            JobStatus.PENDING.value,
            _ts(utcnow()),
            reason,
            job_id,
            JobStatus.PROCESSING.value,
        ))

        if job:
            self._log_transition(
                job_id, JobStatus.PROCESSING.value, JobStatus.PENDING.value, error=reason,
            )
        return job

    def reset_stale(self, stale_after_s: float) -> int:
        """Crash recovery: put processing jobs whose claimer went silent back to pending.

        Args:
            stale_after_s: A job is stale when its last heartbeat (or, before
                the first one, its start) is older than this

        Returns:
            Count of reset jobs

        attempt_count is not incremented; the interrupted attempt never ended.
        """
        cutoff = _ts(utcnow() - timedelta(seconds=stale_after_s))

        with self.db.conn:
            cursor = self.db.execute("""
                UPDATE jobs
                SET status = ?,
                    run_after = ?,
                    started_at = NULL,
                    last_heartbeat = NULL,
                    worker_id = NULL,
                    progress_percent = NULL,
                    progress_message = 'Reset after stale claim'
                WHERE status = ?
                  AND (
                      last_heartbeat < ?
                      OR (last_heartbeat IS NULL AND started_at < ?)
                  )
                RETURNING id
            """, (
                JobStatus.PENDING.value,
                _ts(utcnow()),
                JobStatus.PROCESSING.value,
                cutoff,
                cutoff,
            ))
            rows = cursor.fetchall()

        for (job_id,) in rows:
            self._log_transition(
                job_id, JobStatus.PROCESSING.value, JobStatus.PENDING.value,
                error="Reset stale job (crash recovery)",
            )
        if rows:
            logger.warning("Reset %d stale processing jobs: %s", len(rows), [r[0] for r in rows])
        return len(rows)

    def jobs_for_content(self, content_id: str) -> List[Job]:
        return [
            self._row_to_job(row)
            for row in self.db["jobs"].rows_where(
                "content_id = ?", [content_id], order_by="created_at, rowid"
            )
        ]

    def has_pending_dependents(self, job_id: str) -> bool:
        row = self.db.execute(
            "SELECT COUNT(*) FROM jobs WHERE depends_on = ? AND status IN (?, ?)",
            (job_id, JobStatus.PENDING.value, JobStatus.PROCESSING.value),
        ).fetchone()
        return row[0] > 0

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        content_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Job], int]:
        """Query jobs for operators.

        Complexity: index-assisted filter plus one COUNT(*) for the total
        """
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(getattr(status, "value", status))
        if job_type:
            clauses.append("type = ?")
            params.append(getattr(job_type, "value", job_type))
        if content_id:
            clauses.append("content_id = ?")
            params.append(content_id)
        where = " AND ".join(clauses) or "1 = 1"

        total = self.db.execute(
            f"SELECT COUNT(*) FROM jobs WHERE {where}", params
        ).fetchone()[0]
        items = [
            self._row_to_job(row)
            for row in self.db["jobs"].rows_where(
                where,
                params,
                order_by="created_at DESC, rowid DESC",
                limit=limit,
                offset=offset,
            )
        ]
        return items, total

    def metrics(self) -> Dict[str, Any]:
        counts_by_status = {status.value: 0 for status in JobStatus}
        for status, count in self.db.execute(
            "SELECT status, COUNT(*) FROM jobs GROUP BY status"
        ).fetchall():
            counts_by_status[status] = count

        counts_by_type: Dict[str, int] = {}
        for job_type, count in self.db.execute(
            "SELECT type, COUNT(*) FROM jobs GROUP BY type"
        ).fetchall():
            counts_by_type[job_type] = count

        durations: Dict[str, List[float]] = defaultdict(list)
        for job_type, started_at, completed_at in self.db.execute(
            """
            SELECT type, started_at, completed_at FROM jobs
            WHERE status = ? AND started_at IS NOT NULL AND completed_at IS NOT NULL
            """,
            (JobStatus.COMPLETED.value,),
        ).fetchall():
            elapsed = (_parse_ts(completed_at) - _parse_ts(started_at)).total_seconds()
            durations[job_type].append(max(0.0, elapsed))

        return {
            "total": sum(counts_by_status.values()),
            "counts_by_status": counts_by_status,
            "counts_by_type": counts_by_type,
            "average_duration_s_by_type": {
                job_type: sum(values) / len(values) for job_type, values in durations.items()
            },
        }

    def transitions(self, job_id: str) -> List[StateTransition]:
        return [
            StateTransition(**row)
            for row in self.db["state_transitions"].rows_where(
                "job_id = ?", [job_id], order_by="id"
            )
        ]

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail.

        Audit failures are logged and swallowed; they never fail the job.
        """
        try:
            self.db["state_transitions"].insert({
                "job_id": job_id,
                "from_state": from_state,
                "to_state": to_state,
                "timestamp": _ts(utcnow()),
                "worker_id": worker_id,
                "error_snippet": error[:200] if error else None,
            })
        except sqlite3.Error as e:
            logger.warning("Could not record transition %s -> %s for %s: %s",
                           from_state, to_state, job_id, e)
