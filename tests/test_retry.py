import time
from datetime import timedelta

import pytest

from content_pipeline.jobs import (
    JobItem,
    JobNotFoundError,
    JobNotRetriableError,
    JobStatus,
    JobType,
    RetryController,
)
from content_pipeline.jobs.models import utcnow
from content_pipeline.models import PipelineConfig


@pytest.fixture
def store(runtime, make_content):
    make_content("audio", "mp3", id="c1")
    return runtime.store


@pytest.fixture
def controller(store, config):
    return RetryController(store, config)


def _claimed(store, attempt_count=0, max_attempts=3):
    job = store.insert(JobItem(type=JobType.TRANSCRIBE, content_id="c1", max_attempts=max_attempts))
    for _ in range(attempt_count):
        # Burn attempts through the store's own retry path
        store.claim(job.id, "w")
        current = store.get(job.id)
        store.schedule_retry(job.id, current.attempt_count + 1, utcnow(), "earlier failure")
    return store.claim(job.id, "w")


class TestBackoff:
    def test_exponential_and_capped(self):
        config = PipelineConfig.from_dict({"jobs": {"backoff_base_s": 1.0, "backoff_max_s": 10.0}})
        controller = RetryController(None, config)

        assert [controller.backoff(k) for k in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


class TestOnFailure:
    def test_retriable_reschedules(self, controller, store):
        job = _claimed(store)
        before = utcnow()

        decision = controller.on_failure(job, "timeout", retriable=True)

        assert decision.status == JobStatus.PENDING
        assert decision.attempt_count == 1
        assert decision.run_after >= before + timedelta(seconds=controller.backoff(1))
        stored = store.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempt_count == 1
        assert stored.started_at is None

    def test_retry_monotonicity(self, controller, store):
        """k < max-1 goes back to pending with k+1; k == max-1 fails."""
        job = _claimed(store, attempt_count=1)
        retry = controller.on_failure(job, "flaky", True)
        assert retry.status == JobStatus.PENDING
        assert store.get(job.id).attempt_count == 2
        assert store.claim(job.id, "w") is None

        time.sleep(max(0.0, (retry.run_after - utcnow()).total_seconds()) + 0.01)
        job = store.claim(job.id, "w")
        assert job is not None
        decision = controller.on_failure(job, "flaky", True)

        assert decision.status == JobStatus.FAILED
        assert decision.terminal
        stored = store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempt_count == 3
        assert stored.error_message == "flaky"

    def test_non_retriable_fails_immediately(self, controller, store):
        job = _claimed(store)
        decision = controller.on_failure(job, "no transcript", retriable=False)

        assert decision.status == JobStatus.FAILED
        assert store.get(job.id).attempt_count == 1

    def test_single_attempt_budget(self, controller, store):
        job = _claimed(store, max_attempts=1)
        decision = controller.on_failure(job, "timeout", retriable=True)

        assert decision.status == JobStatus.FAILED
        assert store.get(job.id).attempt_count == 1

    def test_run_budget_tighter_than_job(self, controller, store):
        job = _claimed(store, max_attempts=5)
        decision = controller.on_failure(job, "timeout", retriable=True, max_attempts=1)

        assert decision.status == JobStatus.FAILED
        assert store.get(job.id).can_retry

    def test_job_no_longer_processing(self, controller, store):
        job = _claimed(store)
        store.complete(job.id, {})

        decision = controller.on_failure(job, "late failure", retriable=True)

        assert decision.status == JobStatus.COMPLETED
        assert store.get(job.id).status == JobStatus.COMPLETED


class TestManualRetry:
    def test_resets_failed_job(self, controller, store):
        job = _claimed(store)
        controller.on_failure(job, "bad", retriable=False)

        reset = controller.manual_retry(job.id)

        assert reset.status == JobStatus.PENDING
        assert reset.attempt_count == 1
        assert reset.run_after <= utcnow()

    def test_unknown_job(self, controller):
        with pytest.raises(JobNotFoundError):
            controller.manual_retry("missing")

    def test_rejects_non_failed(self, controller, store):
        job = _claimed(store)
        with pytest.raises(JobNotRetriableError):
            controller.manual_retry(job.id)

    def test_rejects_exhausted(self, controller, store):
        job = _claimed(store, attempt_count=2)
        controller.on_failure(job, "flaky", True)
        assert store.get(job.id).attempt_count == 3

        with pytest.raises(JobNotRetriableError):
            controller.manual_retry(job.id)
