import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from content_pipeline.api.main import app
from content_pipeline.jobs.models import Content
from content_pipeline.models import PipelineConfig
from content_pipeline.providers import Providers
from content_pipeline.runtime import build_runtime


class FakeProviders(Providers):
    """In-memory providers recording every call.

    ``failures[name]`` is a list of exceptions raised, in order, by the next
    calls to provider method ``name``.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.transcript_text = "hello world " * 200

    def _record(self, name, arg):
        self.calls.append((name, arg))
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def called(self, name):
        return [arg for call, arg in self.calls if call == name]

    async def extract_audio(self, storage_path):
        self._record("extract_audio", storage_path)
        return f"{storage_path}.wav"

    async def transcribe(self, audio_path):
        self._record("transcribe", audio_path)
        return {
            "text": self.transcript_text,
            "segments": [{"start": 0.0, "end": 1.5, "text": "hello world"}],
        }

    async def extract_pdf_text(self, storage_path):
        self._record("extract_pdf_text", storage_path)
        return "Quarterly report body text"

    async def extract_docx_text(self, storage_path):
        self._record("extract_docx_text", storage_path)
        return "Meeting notes body text"

    async def read_text(self, storage_path):
        self._record("read_text", storage_path)
        return "A short note"

    async def generate_document(self, transcript, title=None):
        self._record("generate_document", title)
        return f"# {title or 'Untitled'}\n\n{transcript[:80]}"

    async def embed(self, texts):
        self._record("embed", len(texts))
        return [[float(len(t)), 1.0] for t in texts]

    async def extract_frames(self, storage_path):
        self._record("extract_frames", storage_path)
        return [
            {"frame_number": i, "time_sec": i * 2.0, "storage_path": f"{storage_path}/frame_{i}.jpg"}
            for i in range(3)
        ]

    async def describe_frame(self, frame_path):
        self._record("describe_frame", frame_path)
        return f"Description of {frame_path}"

    async def run_integration(self, job_type, payload):
        self._record("run_integration", job_type)
        return {"job_type": job_type, "synced": True}


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_pipeline.db")


@pytest.fixture
def config(temp_db):
    """Fast timings so retries and waits finish within a test."""
    return PipelineConfig.from_dict({
        "database": {"path": temp_db},
        "jobs": {
            "backoff_base_s": 0.01,
            "backoff_max_s": 0.05,
            "handler_timeout_s": 2.0,
            "stage_wait_timeout_s": 5.0,
            "stage_poll_interval_s": 0.01,
        },
        "poller": {"enabled": False, "poll_interval_s": 0.01, "max_poll_interval_s": 0.04},
        "streaming": {"heartbeat_interval_s": 5.0},
        "embeddings": {"chunk_size": 200, "chunk_overlap": 20},
    })


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def runtime(config, providers):
    return build_runtime(config, providers=providers, worker_id="test-executor")


@pytest.fixture
def make_content(runtime):
    """Factory creating content records in the runtime's store."""
    counter = {"n": 0}

    def _make(content_type="recording", file_type="mp4", **kwargs):
        counter["n"] += 1
        kwargs.setdefault("id", f"content-{counter['n']}")
        kwargs.setdefault("tenant_id", "tenant-1")
        kwargs.setdefault("title", f"Item {counter['n']}")
        kwargs.setdefault("storage_path", f"/storage/{kwargs['id']}.{file_type or 'bin'}")
        return runtime.contents.create(
            Content(content_type=content_type, file_type=file_type, **kwargs)
        )

    return _make


@pytest.fixture(scope="function")
async def client(runtime):
    # ASGITransport does not run the lifespan; install the runtime directly
    app.state.runtime = runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await runtime.executor.shutdown()
    runtime.streaming.close_all()
    del app.state.runtime
