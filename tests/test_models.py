"""Tests for Pydantic models and validation."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from content_pipeline.jobs.models import Job, JobItem, JobStatus, JobType, utcnow
from content_pipeline.models import (
    EmbeddingsConfig,
    JobsConfig,
    PipelineConfig,
    PollerConfig,
)


def test_jobs_config_valid():
    config = JobsConfig(max_attempts=5, backoff_base_s=0.5, backoff_max_s=30)
    assert config.max_attempts == 5
    assert config.backoff_max_s == 30


def test_jobs_config_rejects_zero_attempts():
    with pytest.raises(ValidationError) as exc_info:
        JobsConfig(max_attempts=0)
    assert "max_attempts" in str(exc_info.value)


def test_backoff_max_below_base_rejected():
    with pytest.raises(ValidationError):
        JobsConfig(backoff_base_s=10.0, backoff_max_s=5.0)


def test_stale_threshold_must_exceed_heartbeat():
    with pytest.raises(ValidationError):
        JobsConfig(heartbeat_interval_s=60.0, stale_after_s=30.0)


def test_overlap_must_be_below_chunk_size():
    with pytest.raises(ValidationError):
        EmbeddingsConfig(chunk_size=100, chunk_overlap=100)


def test_poller_batch_size_positive():
    with pytest.raises(ValidationError):
        PollerConfig(batch_size=0)


def test_invalid_log_level():
    with pytest.raises(ValidationError):
        PipelineConfig.from_dict({"logging": {"level": "LOUD"}})


def test_pipeline_config_from_dict():
    config = PipelineConfig.from_dict({
        "jobs": {"max_attempts": 4},
        "poller": {"enabled": False},
    })
    assert config.jobs.max_attempts == 4
    assert config.poller.enabled is False
    assert config.embeddings.chunk_size == 1000


def test_merge_cli_overrides_returns_new_instance():
    config = PipelineConfig()
    updated = config.merge_cli_overrides({"max_attempts": 6})
    assert updated.jobs.max_attempts == 6
    assert config.jobs.max_attempts == 3


def test_job_item_rejects_zero_attempts():
    with pytest.raises(ValidationError):
        JobItem(type=JobType.TRANSCRIBE, max_attempts=0)


def test_job_item_rejects_unknown_type():
    with pytest.raises(ValidationError):
        JobItem(type="render_video")


def _job(**fields):
    now = utcnow()
    values = dict(
        id="j1",
        type=JobType.TRANSCRIBE,
        status=JobStatus.PENDING,
        created_at=now,
        run_after=now,
    )
    values.update(fields)
    return Job(**values)


def test_job_can_retry():
    assert _job(status=JobStatus.FAILED, attempt_count=1, max_attempts=3).can_retry
    assert not _job(status=JobStatus.FAILED, attempt_count=3, max_attempts=3).can_retry
    assert not _job(status=JobStatus.PENDING).can_retry


def test_job_terminal_and_duration():
    started = utcnow()
    job = _job(
        status=JobStatus.COMPLETED,
        started_at=started,
        completed_at=started + timedelta(seconds=2.5),
    )
    assert job.is_terminal
    assert job.duration_s == pytest.approx(2.5)
    assert _job().duration_s is None
    assert not _job().is_terminal
