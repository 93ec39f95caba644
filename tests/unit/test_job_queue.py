"""Tests for the pipeline job queue."""

from datetime import timedelta

import pytest

from capture_pipeline.errors import ParseError, RetryableExternalError
from capture_pipeline.models import JobStatus, Stage, utcnow
from capture_pipeline.services.job_queue import (
    PRIORITY_BACKFILL,
    PRIORITY_DEFAULT,
    PRIORITY_INTERACTIVE,
    JobQueue,
    RetryPolicy,
)


def make_queue(tmp_path):
    return JobQueue(str(tmp_path / "jobs.db"), retry_policy=RetryPolicy(base_delay=1.0, max_delay=60.0))


def test_job_queue_lifecycle(tmp_path):
    queue = make_queue(tmp_path)

    job = queue.enqueue("rec-1", "user-1", Stage.ENRICHMENT, record_version=2, payload={"source": "web"})
    assert job.status == JobStatus.PENDING
    assert job.attempt == 0
    assert job.payload == {"source": "web"}

    claimed = queue.claim_next()
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.ACTIVE
    assert claimed.attempt == 1
    assert claimed.started_at is not None

    queue.mark_completed(job.job_id)
    completed = queue.get_job(job.job_id)
    assert completed.status == JobStatus.COMPLETED
    assert completed.completed_at is not None
    assert not queue.has_outstanding()


def test_claim_orders_by_priority_then_age(tmp_path):
    queue = make_queue(tmp_path)
    backfill = queue.enqueue("rec-1", "u", Stage.ENRICHMENT, record_version=1, priority=PRIORITY_BACKFILL)
    default = queue.enqueue("rec-2", "u", Stage.ENRICHMENT, record_version=1, priority=PRIORITY_DEFAULT)
    interactive = queue.enqueue("rec-3", "u", Stage.ENRICHMENT, record_version=1, priority=PRIORITY_INTERACTIVE)
    later_default = queue.enqueue("rec-4", "u", Stage.ENRICHMENT, record_version=1, priority=PRIORITY_DEFAULT)

    order = [queue.claim_next().job_id for _ in range(4)]
    assert order == [interactive.job_id, default.job_id, later_default.job_id, backfill.job_id]


def test_one_active_job_per_record(tmp_path):
    queue = make_queue(tmp_path)
    first = queue.enqueue("rec-1", "u", Stage.TRANSCRIPTION, record_version=2)
    second = queue.enqueue("rec-1", "u", Stage.ENRICHMENT, record_version=2)
    other = queue.enqueue("rec-2", "u", Stage.ENRICHMENT, record_version=2)

    assert queue.claim_next().job_id == first.job_id
    # rec-1 is busy, so the next claim skips to another record
    assert queue.claim_next().job_id == other.job_id
    assert queue.claim_next() is None

    queue.mark_completed(first.job_id)
    assert queue.claim_next().job_id == second.job_id


def test_retryable_failure_schedules_backoff(tmp_path):
    queue = make_queue(tmp_path)
    queue.enqueue("rec-1", "u", Stage.ENRICHMENT, record_version=2, max_attempts=3)
    job = queue.claim_next()

    updated = queue.fail_or_retry(job, RetryableExternalError("rate limited"), record_version=3)

    assert updated.status == JobStatus.RETRY_PENDING
    assert updated.record_version == 3
    assert updated.next_retry_at > utcnow()
    # Not eligible until the retry is due
    assert queue.claim_next() is None
    retried = queue.claim_next(now=utcnow() + timedelta(seconds=5))
    assert retried.job_id == job.job_id
    assert retried.attempt == 2


def test_exhausted_or_terminal_failures_fail_the_job(tmp_path):
    queue = make_queue(tmp_path)
    queue.enqueue("rec-1", "u", Stage.ENRICHMENT, record_version=2, max_attempts=1)
    job = queue.claim_next()
    failed = queue.fail_or_retry(job, RetryableExternalError("timeout"))
    assert failed.status == JobStatus.FAILED
    assert "Retries exhausted" in failed.last_error

    queue.enqueue("rec-2", "u", Stage.ENRICHMENT, record_version=2, max_attempts=3)
    job = queue.claim_next()
    parse_failed = queue.fail_or_retry(job, ParseError("not json"))
    assert parse_failed.status == JobStatus.FAILED
    assert parse_failed.attempt == 1


def test_retry_policy_backoff_is_capped_and_jittered():
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0, rng=lambda low, high: high)
    assert policy.delay(1) == pytest.approx(1.2)
    assert policy.delay(3) == pytest.approx(4.8)
    assert policy.delay(10) == pytest.approx(72.0)

    low_policy = RetryPolicy(base_delay=1.0, max_delay=60.0, rng=lambda low, high: low)
    assert low_policy.delay(2) == pytest.approx(1.6)


def test_cancel_and_recover(tmp_path):
    queue = make_queue(tmp_path)
    queue.enqueue("rec-1", "u", Stage.ENRICHMENT, record_version=2)
    queue.enqueue("rec-2", "u", Stage.ENRICHMENT, record_version=2)
    active = queue.claim_next()

    assert queue.cancel_pending("rec-2", "edited") == 1
    assert queue.recover_interrupted() == 1
    recovered = queue.get_job(active.job_id)
    assert recovered.status == JobStatus.PENDING
    assert recovered.attempt == 0

    counts = queue.counts()
    assert counts["pending"] == 1
    assert counts["failed"] == 1
    assert [j.record_id for j in queue.list_jobs(status=JobStatus.FAILED)] == ["rec-2"]


def test_purge_finished(tmp_path):
    queue = make_queue(tmp_path)
    job = queue.enqueue("rec-1", "u", Stage.ENRICHMENT, record_version=2)
    queue.claim_next()
    queue.mark_completed(job.job_id)

    assert queue.purge_finished(older_than=timedelta(days=1)) == 0
    assert queue.purge_finished(older_than=timedelta(seconds=-1)) == 1
