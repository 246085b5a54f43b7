"""Tests for content, streaming and job operator endpoints."""

import asyncio
import json

import pytest
from httpx import AsyncClient

from content_pipeline.jobs import ContentStatus, JobStatus


def sse_events(body: str):
    """Decode the data frames of an SSE body, skipping heartbeats."""
    return [
        json.loads(block[len("data: "):])
        for block in body.split("\n\n")
        if block.startswith("data: ")
    ]


async def wait_for_pipelines(runtime, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while runtime.executor.active_pipelines and loop.time() < deadline:
        await asyncio.sleep(0.01)


async def create(client, **fields):
    body = {"content_type": "recording", "file_type": "mp4", "storage_path": "/storage/x.mp4"}
    body.update(fields)
    response = await client.post("/content", json=body)
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio(loop_scope="function")
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "active_streams": 0, "active_pipelines": 0}


@pytest.mark.asyncio(loop_scope="function")
async def test_create_and_get_content(client: AsyncClient):
    """Created content starts uploaded with no artifacts."""
    created = await create(client, id="c1", title="Standup")
    assert created["status"] == "uploaded"

    response = await client.get("/content/c1")
    assert response.status_code == 200
    data = response.json()
    assert data["title"] == "Standup"
    assert data["artifacts"] == {"transcript": False, "document": False, "chunks": 0, "frames": 0}


@pytest.mark.asyncio(loop_scope="function")
async def test_create_duplicate_content_returns_409(client: AsyncClient):
    await create(client, id="dup")
    response = await client.post("/content", json={"id": "dup", "content_type": "audio"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CONTENT_EXISTS"


@pytest.mark.asyncio(loop_scope="function")
async def test_unknown_content_returns_404(client: AsyncClient):
    assert (await client.get("/content/nope")).status_code == 404
    assert (await client.get("/content/nope/jobs")).status_code == 404
    assert (await client.get("/content/nope/stream")).status_code == 404
    assert (await client.post("/content/nope/reprocess", json={"step": "all"})).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_stream_with_processing_runs_pipeline(client: AsyncClient, runtime):
    """The stream carries the whole run and ends with complete."""
    await create(client, id="video-1")

    response = await client.get("/content/video-1/stream", params={"start_processing": "true"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = sse_events(response.text)
    assert events[0]["message"] == "Connected"
    assert events[1]["message"] == "Queued 4 stages"
    assert events[-1]["type"] == "complete"
    assert "error" not in [e["type"] for e in events]

    await wait_for_pipelines(runtime)
    content = (await client.get("/content/video-1")).json()
    assert content["status"] == ContentStatus.COMPLETED.value
    assert content["artifacts"]["transcript"] is True
    assert content["artifacts"]["chunks"] > 0

    jobs = (await client.get("/content/video-1/jobs")).json()
    assert [j["status"] for j in jobs] == ["completed"] * 4
    assert all(j["duration_s"] is not None for j in jobs)


@pytest.mark.asyncio(loop_scope="function")
async def test_stream_for_unsupported_content_completes_immediately(client: AsyncClient):
    await create(client, id="sheet", content_type="spreadsheet", file_type="xlsx")

    response = await client.get("/content/sheet/stream", params={"start_processing": "true"})
    events = sse_events(response.text)

    assert [e["type"] for e in events] == ["log", "complete"]
    assert events[-1]["message"] == "No processing required"


@pytest.mark.asyncio(loop_scope="function")
async def test_stream_reports_pipeline_failure(client: AsyncClient, providers):
    await create(client, id="broken", content_type="document", file_type="pdf", storage_path="/x.pdf")
    providers.failures["extract_pdf_text"] = [FileNotFoundError("object missing")]

    response = await client.get("/content/broken/stream", params={"start_processing": "true"})
    events = sse_events(response.text)

    assert events[-1]["type"] == "error"
    assert "PDF text extraction failed" in events[-1]["message"]
    content = (await client.get("/content/broken")).json()
    assert content["status"] == "error"


@pytest.mark.asyncio(loop_scope="function")
async def test_reprocess_stream(client: AsyncClient, runtime):
    await create(client, id="audio-1", content_type="audio", file_type="mp3")
    await client.get("/content/audio-1/stream", params={"start_processing": "true"})
    await wait_for_pipelines(runtime)

    response = await client.get("/content/audio-1/reprocess/stream", params={"step": "embeddings"})
    events = sse_events(response.text)

    assert events[1]["message"] == "Reprocessing from embeddings"
    assert events[-1]["type"] == "complete"


@pytest.mark.asyncio(loop_scope="function")
async def test_reprocess_returns_202(client: AsyncClient, runtime):
    await create(client, id="doc-1", content_type="document", file_type="pdf", storage_path="/d.pdf")

    response = await client.post("/content/doc-1/reprocess", json={"step": "embeddings"})

    assert response.status_code == 202
    data = response.json()
    assert data["stages"] == ["generate_embeddings"]
    assert len(data["job_ids"]) == 1
    await wait_for_pipelines(runtime)


@pytest.mark.asyncio(loop_scope="function")
async def test_reprocess_invalid_step_returns_400(client: AsyncClient):
    await create(client, id="doc-2", content_type="document", file_type="pdf")

    frames = await client.post("/content/doc-2/reprocess", json={"step": "frames"})
    unknown = await client.get("/content/doc-2/reprocess/stream", params={"step": "thumbnails"})

    assert frames.status_code == 400
    assert unknown.status_code == 400


@pytest.mark.asyncio(loop_scope="function")
async def test_jobs_listing_and_filters(client: AsyncClient, runtime):
    """Listing is paginated and filterable by status, type and content."""
    await create(client, id="a1", content_type="audio", file_type="mp3")
    await create(client, id="t1", content_type="text", file_type="md")
    runtime.enqueuer.enqueue_pipeline("a1")
    runtime.enqueuer.enqueue_pipeline("t1")

    everything = (await client.get("/jobs")).json()
    assert everything["total"] == 5
    assert len(everything["items"]) == 5

    page = (await client.get("/jobs", params={"limit": 2, "offset": 2})).json()
    assert page["total"] == 5
    assert len(page["items"]) == 2

    by_type = (await client.get("/jobs", params={"type": "transcribe"})).json()
    assert [j["type"] for j in by_type["items"]] == ["transcribe"]

    by_content = (await client.get("/jobs", params={"content_id": "t1"})).json()
    assert by_content["total"] == 2

    pending = (await client.get("/jobs", params={"status": "pending"})).json()
    assert pending["total"] == 5

    assert (await client.get("/jobs", params={"status": "bogus"})).status_code == 422
    assert (await client.get("/jobs", params={"limit": 0})).status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_job_detail_and_metrics(client: AsyncClient, runtime):
    await create(client, id="n1", content_type="text", file_type="txt")
    enqueued = runtime.enqueuer.enqueue_pipeline("n1")
    await runtime.executor.run_pipeline(enqueued.job_ids, "n1")

    detail = (await client.get(f"/jobs/{enqueued.job_ids[0]}")).json()
    assert detail["status"] == "completed"
    assert detail["attempt_count"] == 1
    assert [t["to_state"] for t in detail["transitions"]] == ["pending", "processing", "completed"]

    metrics = (await client.get("/jobs/metrics")).json()
    assert metrics["total"] == 2
    assert metrics["counts_by_status"]["completed"] == 2
    assert metrics["counts_by_status"]["failed"] == 0
    assert "process_text_note" in metrics["average_duration_s_by_type"]

    assert (await client.get("/jobs/missing")).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_retry_unknown_job_returns_404(client: AsyncClient):
    assert (await client.post("/jobs/missing/retry")).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_retry_non_failed_job_returns_409(client: AsyncClient, runtime):
    await create(client, id="p1", content_type="audio", file_type="mp3")
    enqueued = runtime.enqueuer.enqueue_pipeline("p1")

    response = await client.post(f"/jobs/{enqueued.job_ids[0]}/retry")

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "JOB_NOT_RETRIABLE"


@pytest.mark.asyncio(loop_scope="function")
async def test_retry_failed_job_resumes_pipeline(client: AsyncClient, runtime, providers):
    """Operator retry resets the job and runs the stages waiting on it."""
    await create(client, id="r1", content_type="audio", file_type="mp3")
    providers.failures["generate_document"] = [ValueError("prompt rejected")]
    enqueued = runtime.enqueuer.enqueue_pipeline("r1")
    result = await runtime.executor.run_pipeline(enqueued.job_ids, "r1")
    assert result.failed_job == enqueued.job_ids[1]

    response = await client.post(f"/jobs/{enqueued.job_ids[1]}/retry")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "pending"
    assert data["resumed_job_ids"] == enqueued.job_ids[1:]
    assert runtime.contents.get("r1").error_message is None

    await wait_for_pipelines(runtime)
    assert all(runtime.store.get(j).status == JobStatus.COMPLETED for j in enqueued.job_ids)
    assert runtime.contents.get("r1").status == ContentStatus.COMPLETED
