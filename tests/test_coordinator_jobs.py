"""
Tests for the queued-job path of IdempotencyCoordinator

Tests cover:
- Fail, retry, then skip under one job key
- Untracked jobs (no key, job path disabled)
- Skipping while another worker holds the job lock
- Marker re-check after taking the lock
- Store outage policies and marker write failures
"""

import json
from unittest.mock import Mock

import pytest

from app.services.idempotency import (
    FastPathCache,
    IdempotencyConfig,
    IdempotencyCoordinator,
    IdempotencyMetrics,
    InMemoryFastPathCache,
    JobOutcomeKind,
    LockHandle,
    RecordStore,
    StoreUnavailableError,
)
from app.services.idempotency.coordinator import job_lock_key, job_marker_key


class CaptureJob:
    """Minimal job exposing idempotency_key()."""

    def __init__(self, payment_id, fail_times=0):
        self.payment_id = payment_id
        self.fail_times = fail_times
        self.runs = 0

    def idempotency_key(self):
        if self.payment_id is None:
            return None
        return f"capture:{self.payment_id}"

    def handle(self):
        self.runs += 1
        if self.runs <= self.fail_times:
            raise ConnectionError("payment provider timeout")
        return {"payment_id": self.payment_id, "status": "captured"}


@pytest.fixture
def job_coordinator(cache):
    return IdempotencyCoordinator(cache, Mock(spec=RecordStore))


class TestJobLifecycle:
    """capture:42 fails once, succeeds on retry, then is skipped."""

    def test_fail_retry_skip(self, job_coordinator, cache):
        job = CaptureJob(42, fail_times=1)

        with pytest.raises(ConnectionError):
            job_coordinator.run_keyed_job(job, job.handle)
        assert cache.exists(job_marker_key("capture:42")) is False
        assert cache.is_locked(job_lock_key("capture:42")) is False

        retried = job_coordinator.run_keyed_job(job, job.handle)
        assert retried.kind == JobOutcomeKind.EXECUTED
        assert retried.value == {"payment_id": 42, "status": "captured"}

        redelivered = job_coordinator.run_keyed_job(job, job.handle)
        assert redelivered.kind == JobOutcomeKind.SKIPPED
        assert redelivered.reason == "already_processed"

        assert job.runs == 2

    def test_marker_records_job_type(self, job_coordinator, cache):
        job = CaptureJob(7)

        job_coordinator.run_keyed_job(job, job.handle)

        marker = json.loads(cache.get(job_marker_key("capture:7")))
        assert marker["job_type"] == "CaptureJob"
        assert "processed_at" in marker

    def test_base_exception_also_releases(self, job_coordinator, cache):
        class WorkerShutdown(BaseException):
            pass

        def interrupted():
            raise WorkerShutdown()

        with pytest.raises(WorkerShutdown):
            job_coordinator.run_job("CaptureJob", "capture:9", interrupted)

        assert cache.exists(job_marker_key("capture:9")) is False
        assert cache.is_locked(job_lock_key("capture:9")) is False

    def test_metrics_hooks(self, cache):
        metrics = Mock(spec=IdempotencyMetrics)
        coordinator = IdempotencyCoordinator(cache, Mock(spec=RecordStore), metrics=metrics)
        job = CaptureJob(1)

        coordinator.run_keyed_job(job, job.handle)
        coordinator.run_keyed_job(job, job.handle)

        metrics.job_executed.assert_called_once_with("success")
        metrics.job_skipped.assert_called_once_with("already_processed")


class TestUntrackedJobs:
    """Jobs without a key run without the protocol."""

    def test_no_key_is_declined_and_runs(self, job_coordinator, cache):
        job = CaptureJob(None)

        first = job_coordinator.run_keyed_job(job, job.handle)
        second = job_coordinator.run_keyed_job(job, job.handle)

        assert first.kind == JobOutcomeKind.DECLINED
        assert first.reason == "no_key"
        assert second.kind == JobOutcomeKind.DECLINED
        assert job.runs == 2

    def test_disabled_job_path_runs_every_time(self, cache):
        coordinator = IdempotencyCoordinator(cache, Mock(spec=RecordStore), IdempotencyConfig(job_enabled=False))
        job = CaptureJob(42)

        coordinator.run_keyed_job(job, job.handle)
        outcome = coordinator.run_keyed_job(job, job.handle)

        assert outcome.kind == JobOutcomeKind.DECLINED
        assert job.runs == 2


class TestConcurrentWorkers:
    """Another worker holding the job lock."""

    def test_held_lock_skips_without_error(self, job_coordinator, cache):
        cache.acquire_lock(job_lock_key("capture:42"), ttl=60)
        job = CaptureJob(42)

        outcome = job_coordinator.run_keyed_job(job, job.handle)

        assert outcome.kind == JobOutcomeKind.SKIPPED
        assert outcome.reason == "in_progress"
        assert job.runs == 0

    def test_marker_rechecked_after_lock(self):
        cache = Mock(spec=FastPathCache)
        # Not done at the first look, done by the time the lock is ours
        cache.exists.side_effect = [False, True]
        cache.acquire_lock.return_value = LockHandle(key=job_lock_key("capture:42"), token="t", ttl=60)
        cache.release_lock.return_value = True
        coordinator = IdempotencyCoordinator(cache, Mock(spec=RecordStore), IdempotencyConfig(lock_renewal=False))
        job = CaptureJob(42)

        outcome = coordinator.run_keyed_job(job, job.handle)

        assert outcome.kind == JobOutcomeKind.SKIPPED
        assert outcome.reason == "already_processed"
        assert job.runs == 0
        cache.release_lock.assert_called_once()


class TestStoreUnavailable:
    """Cache outages on the job path."""

    @pytest.fixture
    def broken_cache(self):
        cache = Mock(spec=FastPathCache)
        cache.exists.side_effect = StoreUnavailableError("redis", "exists")
        return cache

    def test_fail_closed_raises_for_queue_retry(self, broken_cache):
        coordinator = IdempotencyCoordinator(broken_cache, Mock(spec=RecordStore))
        job = CaptureJob(42)

        with pytest.raises(StoreUnavailableError):
            coordinator.run_keyed_job(job, job.handle)

        assert job.runs == 0

    def test_fail_open_runs_untracked(self, broken_cache):
        coordinator = IdempotencyCoordinator(broken_cache, Mock(spec=RecordStore), IdempotencyConfig(fail_open=True))
        job = CaptureJob(42)

        outcome = coordinator.run_keyed_job(job, job.handle)

        assert outcome.kind == JobOutcomeKind.DECLINED
        assert outcome.reason == "store_unavailable"
        assert job.runs == 1

    def test_marker_write_failure_still_reports_executed(self):
        class FlakyCache(InMemoryFastPathCache):
            def put(self, key, value, ttl):
                raise StoreUnavailableError("redis", "put")

        cache = FlakyCache()
        coordinator = IdempotencyCoordinator(cache, Mock(spec=RecordStore))
        job = CaptureJob(42)

        outcome = coordinator.run_keyed_job(job, job.handle)

        assert outcome.kind == JobOutcomeKind.EXECUTED
        assert job.runs == 1
        assert cache.is_locked(job_lock_key("capture:42")) is False
