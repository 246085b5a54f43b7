from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from content_pipeline.config import resolve_config
from content_pipeline.jobs.enqueuer import ContentNotFoundError
from content_pipeline.jobs.models import Content, Job, JobStatus, JobType
from content_pipeline.jobs.registry import JobNotFoundError, JobNotRetriableError
from content_pipeline.runtime import Runtime, build_runtime
from content_pipeline.streaming import StreamChannel

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = build_runtime(resolve_config())
        app.state.runtime = runtime

    stop_event = asyncio.Event()
    poller_task = None
    if runtime.config.poller.enabled:
        poller_task = asyncio.create_task(runtime.poller.run(stop_event), name="job-poller")

    yield

    stop_event.set()
    if poller_task is not None:
        await poller_task
    await runtime.executor.shutdown()
    runtime.streaming.close_all()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ContentCreate(BaseModel):
    id: Optional[str] = Field(default=None, description="Client-chosen id (default: UUID)")
    tenant_id: Optional[str] = None
    content_type: str = Field(..., description="recording, video, audio, document or text")
    file_type: Optional[str] = Field(default=None, description="File extension, e.g. mp4")
    title: Optional[str] = None
    storage_path: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReprocessRequest(BaseModel):
    step: str = Field(default="all", description="all, transcript, document, embeddings, frames")


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _job_to_response(job: Job) -> Dict[str, Any]:
    data = job.model_dump(mode="json")
    data["duration_s"] = job.duration_s
    data["can_retry"] = job.can_retry
    return data


def _require_content(runtime: Runtime, content_id: str) -> Content:
    content = runtime.contents.get(content_id)
    if content is None:
        raise HTTPException(status_code=404, detail="Content not found")
    return content


# --- HEALTH ---
@app.get("/health")
async def health_check(request: Request):
    runtime = _runtime(request)
    return {
        "status": "ok",
        "active_streams": runtime.streaming.connection_count(),
        "active_pipelines": runtime.executor.active_pipelines,
    }


# --- CONTENT ---
@app.post("/content", status_code=201)
async def create_content(data: ContentCreate, request: Request):
    """Register an uploaded content record. Id must be unique (409 if taken)."""
    runtime = _runtime(request)
    content_id = data.id or str(uuid.uuid4())
    if runtime.contents.get(content_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "CONTENT_EXISTS", "message": f"Content '{content_id}' already exists"},
        )

    content = runtime.contents.create(
        Content(
            id=content_id,
            tenant_id=data.tenant_id,
            content_type=data.content_type,
            file_type=data.file_type,
            title=data.title,
            storage_path=data.storage_path,
            metadata=data.metadata,
        )
    )
    return content.model_dump(mode="json")


@app.get("/content/{content_id}")
async def get_content(content_id: str, request: Request):
    runtime = _runtime(request)
    content = _require_content(runtime, content_id)
    response = content.model_dump(mode="json")
    response["artifacts"] = {
        "transcript": runtime.contents.get_transcript(content_id) is not None,
        "document": runtime.contents.get_document(content_id) is not None,
        "chunks": runtime.contents.count_chunks(content_id),
        "frames": len(runtime.contents.list_frames(content_id)),
    }
    return response


@app.get("/content/{content_id}/jobs")
async def list_content_jobs(content_id: str, request: Request):
    runtime = _runtime(request)
    _require_content(runtime, content_id)
    return [_job_to_response(job) for job in runtime.store.jobs_for_content(content_id)]


async def event_generator(
    runtime: Runtime, content_id: str, channel: StreamChannel, request: Request
) -> AsyncGenerator[str, None]:
    """
    SSE generator relaying the content's channel until it closes.
    """
    try:
        async for frame in channel.events(runtime.config.streaming.heartbeat_interval_s):
            if await request.is_disconnected():
                break
            yield frame
    finally:
        runtime.streaming.disconnect(content_id, channel)


def _stream_response(runtime: Runtime, content_id: str, channel: StreamChannel, request: Request):
    return StreamingResponse(
        event_generator(runtime, content_id, channel, request),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/content/{content_id}/stream")
async def stream_content(content_id: str, request: Request, start_processing: bool = False):
    """Attach to live events, optionally enqueuing and starting the pipeline."""
    runtime = _runtime(request)
    _require_content(runtime, content_id)

    channel = runtime.streaming.open_stream(content_id)
    if start_processing:
        enqueued = runtime.enqueuer.enqueue_pipeline(content_id)
        if enqueued.empty:
            runtime.streaming.send_complete(
                content_id, "No processing required", {"content_id": content_id, "job_ids": []}
            )
        else:
            runtime.streaming.send_log(
                content_id,
                f"Queued {len(enqueued.job_ids)} stages",
                {"job_ids": enqueued.job_ids, "stages": [s.value for s in enqueued.stages]},
            )
            runtime.executor.start_pipeline(enqueued.job_ids, content_id)

    return _stream_response(runtime, content_id, channel, request)


def _enqueue_reprocess(runtime: Runtime, content_id: str, step: str):
    try:
        return runtime.enqueuer.enqueue_reprocess(content_id, step)
    except ContentNotFoundError:
        raise HTTPException(status_code=404, detail="Content not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/content/{content_id}/reprocess/stream")
async def reprocess_stream(content_id: str, request: Request, step: str = "all"):
    runtime = _runtime(request)
    enqueued = _enqueue_reprocess(runtime, content_id, step)

    channel = runtime.streaming.open_stream(content_id)
    runtime.streaming.send_log(
        content_id,
        f"Reprocessing from {step}",
        {"job_ids": enqueued.job_ids, "stages": [s.value for s in enqueued.stages]},
    )
    runtime.executor.start_pipeline(enqueued.job_ids, content_id)
    return _stream_response(runtime, content_id, channel, request)


@app.post("/content/{content_id}/reprocess", status_code=202)
async def reprocess_content(content_id: str, request: Request, data: Optional[ReprocessRequest] = None):
    """Reprocess from a stage in the background; returns the new job ids."""
    runtime = _runtime(request)
    step = data.step if data else "all"
    enqueued = _enqueue_reprocess(runtime, content_id, step)
    runtime.executor.start_pipeline(enqueued.job_ids, content_id)
    return {
        "content_id": content_id,
        "step": step,
        "job_ids": enqueued.job_ids,
        "stages": [s.value for s in enqueued.stages],
    }


# --- JOBS (operators) ---
@app.get("/jobs")
async def list_jobs(
    request: Request,
    job_status: Optional[JobStatus] = Query(default=None, alias="status"),
    job_type: Optional[JobType] = Query(default=None, alias="type"),
    content_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """List jobs, most recent first."""
    runtime = _runtime(request)
    items, total = runtime.store.list_jobs(
        status=job_status, job_type=job_type, content_id=content_id, limit=limit, offset=offset
    )
    return {
        "items": [_job_to_response(job) for job in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/jobs/metrics")
async def job_metrics(request: Request):
    return _runtime(request).store.metrics()


@app.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request):
    runtime = _runtime(request)
    job = runtime.store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    response = _job_to_response(job)
    response["transitions"] = [
        t.model_dump(mode="json") for t in runtime.store.transitions(job_id)
    ]
    return response


@app.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, request: Request):
    """Reset a failed job to pending and resume the stages waiting on it."""
    runtime = _runtime(request)
    try:
        job = runtime.retry.manual_retry(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobNotRetriableError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "JOB_NOT_RETRIABLE", "message": str(e)},
        )

    resumed = []
    if job.content_id:
        runtime.contents.clear_error(job.content_id)
        if job.payload.get("pipeline"):
            resumed = runtime.executor.dependent_chain(job)
            runtime.executor.start_pipeline(resumed, job.content_id)

    response = _job_to_response(job)
    response["resumed_job_ids"] = resumed
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
