"""
Idempotency Coordinator

Decides, for every operation carrying an idempotency key, whether it is new
(execute), already completed (replay), in flight (conflict) or reusing a key
with different content (mismatch).

Request path: cache -> lock -> durable store -> execute -> persist -> cache.
Job path:     completion marker -> lock -> marker re-check -> execute -> marker.

Correctness rests on two collaborators: the Redis lock avoids wasted work,
the (key, operation) unique constraint guarantees a single record.
"""

import json
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol, TypeVar

import structlog

from app.models.idempotency_record import IdempotencyRecord
from app.services.idempotency.cache import FastPathCache, LockHandle
from app.services.idempotency.errors import (
    DuplicateRecordError,
    InvalidKeyError,
    KeyMalformedError,
    KeyMissingError,
    StoreUnavailableError,
)
from app.services.idempotency.fingerprint import fingerprint
from app.services.idempotency.metrics import IdempotencyMetrics
from app.services.idempotency.outcomes import (
    JobOutcome,
    OperationResult,
    RejectionReason,
    RequestOutcome,
    ResultClassifier,
    is_successful,
)
from app.services.idempotency.store import RecordStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class IdempotencyConfig:
    """Coordinator-facing slice of the application settings."""
    key_max_length: int = 255
    lock_ttl: float = 10.0
    lock_wait: float = 0.0
    lock_renewal: bool = True
    response_ttl: float = 86400
    reject_payload_mismatch: bool = True
    fail_open: bool = False
    job_enabled: bool = True
    job_ttl: float = 86400
    job_lock_ttl: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "IdempotencyConfig":
        return cls(
            key_max_length=settings.idempotency_key_max_length,
            lock_ttl=settings.idempotency_lock_ttl,
            lock_wait=settings.idempotency_lock_wait,
            lock_renewal=settings.idempotency_lock_renewal,
            response_ttl=settings.idempotency_response_ttl,
            reject_payload_mismatch=settings.idempotency_reject_payload_mismatch,
            fail_open=settings.idempotency_fail_open,
            job_enabled=settings.job_idempotency_enabled,
            job_ttl=settings.job_idempotency_ttl,
            job_lock_ttl=settings.job_lock_ttl,
        )


class HasIdempotencyKey(Protocol):
    """Capability for jobs that want at-most-once execution."""

    def idempotency_key(self) -> Optional[str]:
        ...


def validate_key(key: Optional[str], max_length: int = 255) -> str:
    """
    Check an idempotency key's shape.

    Raises:
        KeyMissingError: key is None
        KeyMalformedError: key is blank or longer than max_length bytes
    """
    if key is None:
        raise KeyMissingError()
    if not key.strip() or len(key.encode("utf-8")) > max_length:
        raise KeyMalformedError(key, max_length)
    return key


def response_cache_key(key: str, operation: str) -> str:
    return f"idempotency:{key}:{operation}:response"


def request_lock_key(key: str) -> str:
    return f"idempotency:{key}:lock"


def job_marker_key(key: str) -> str:
    return f"job-idempotency:{key}"


def job_lock_key(key: str) -> str:
    return f"job-idempotency:{key}:lock"


class LockKeeper:
    """
    Keeps a held lock alive while a long operation runs.

    Extends the TTL every ttl/3 seconds on a daemon thread, so an operation
    outliving the configured TTL does not let a duplicate in. A crashed
    process stops renewing and the lock still expires.

    `lost` is set once an extension finds the lock owned by someone else;
    the holder then no longer writes to the fast-path cache.
    """

    def __init__(self, cache: FastPathCache, handle: LockHandle):
        self.cache = cache
        self.handle = handle
        self.lost = False
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"lock-keeper:{handle.key}",
            daemon=True,
        )

    def start(self) -> "LockKeeper":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stopped.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.handle.ttl)

    def _run(self) -> None:
        interval = max(self.handle.ttl / 3.0, 0.01)
        while not self._stopped.wait(interval):
            try:
                if not self.cache.extend_lock(self.handle):
                    self.lost = True
                    logger.warning("idempotency_lock_lost", lock_key=self.handle.key)
                    return
            except StoreUnavailableError as e:
                logger.warning("idempotency_lock_renewal_failed", lock_key=self.handle.key, error=str(e))


class RequestAttempt:
    """
    One pass of a request through the decision protocol.

    Created by IdempotencyCoordinator.request_attempt(). When `outcome` is
    already set the request was decided without executing (replay, conflict,
    mismatch, rejection). Otherwise the caller runs the operation and hands
    the result to complete(). The lock is released when the context exits.
    """

    def __init__(self, coordinator: "IdempotencyCoordinator", key: Optional[str], operation: str):
        self.coordinator = coordinator
        self.key = key
        self.operation = operation
        self.fingerprint: Optional[str] = None
        self.outcome: Optional[RequestOutcome] = None
        self.tracked = True
        self._lock: Optional[LockHandle] = None
        self._keeper: Optional[LockKeeper] = None

    @property
    def should_execute(self) -> bool:
        return self.outcome is None

    @property
    def holds_lock(self) -> bool:
        """False once renewal found the lock taken over by another attempt."""
        return self._keeper is None or not self._keeper.lost

    def complete(self, result: OperationResult) -> RequestOutcome:
        """Record the operation's result (steps 7-9) and return the final outcome."""
        self.outcome = self.coordinator._record_result(self, result)
        return self.outcome

    def release(self) -> None:
        if self._keeper is not None:
            self._keeper.stop()
            self._keeper = None
        if self._lock is not None:
            self.coordinator._release_lock(self._lock)
            self._lock = None


class IdempotencyCoordinator:
    """
    Orchestrates fingerprinting, fast-path cache, lock and durable store.

    Usage:
        coordinator = IdempotencyCoordinator(cache, store, IdempotencyConfig())

        outcome = coordinator.handle_request(
            key="pay-1",
            operation="POST /api/v1/payments",
            payload={"amount": 1000, "currency": "USD"},
            execute=lambda: OperationResult(201, {"id": "pay_123"}),
        )

        coordinator.run_keyed_job(job, job.handle)
    """

    def __init__(
        self,
        cache: FastPathCache,
        store: RecordStore,
        config: Optional[IdempotencyConfig] = None,
        metrics: Optional[IdempotencyMetrics] = None,
        classifier: ResultClassifier = is_successful,
    ):
        """
        Initialize coordinator.

        Args:
            cache: Shared fast-path cache and lock
            store: Durable record store
            config: Protocol settings (defaults to IdempotencyConfig())
            metrics: Observability hook (defaults to no-op)
            classifier: Decides whether a result is replayable
        """
        self.cache = cache
        self.store = store
        self.config = config or IdempotencyConfig()
        self.metrics = metrics or IdempotencyMetrics()
        self.classifier = classifier
        self.logger = logger.bind(service="idempotency")

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def handle_request(
        self,
        key: Optional[str],
        operation: str,
        payload: Any,
        execute: Callable[[], OperationResult],
    ) -> RequestOutcome:
        """
        Run a synchronous operation at most once per (key, operation).

        Exceptions raised by `execute` propagate unchanged after the lock is
        released; nothing is recorded for them.
        """
        started = time.perf_counter()
        with self.request_attempt(key, operation, payload) as attempt:
            if attempt.should_execute:
                attempt.complete(self._invoke(execute))
        return self._finish(attempt.outcome, started)

    async def handle_request_async(
        self,
        key: Optional[str],
        operation: str,
        payload: Any,
        execute: Callable[[], Awaitable[OperationResult]],
    ) -> RequestOutcome:
        """Async twin of handle_request for coroutine operations."""
        started = time.perf_counter()
        with self.request_attempt(key, operation, payload) as attempt:
            if attempt.should_execute:
                try:
                    result = await execute()
                except BaseException:
                    self.metrics.error("operation_failed")
                    raise
                attempt.complete(result)
        return self._finish(attempt.outcome, started)

    def request_attempt_for_fingerprint(self, key: Optional[str], operation: str, payload_fingerprint: str):
        """request_attempt() for callers that already fingerprinted the payload (raw bodies)."""
        return self._attempt(key, operation, lambda: payload_fingerprint)

    def request_attempt(self, key: Optional[str], operation: str, payload: Any):
        """
        Context manager yielding a RequestAttempt with steps 1-6 done.

        The lock (if taken) is released on every exit, including exceptions.
        """
        return self._attempt(key, operation, lambda: fingerprint(payload))

    @contextmanager
    def _attempt(self, key: Optional[str], operation: str, compute_fingerprint: Callable[[], str]) -> Iterator[RequestAttempt]:
        attempt = RequestAttempt(self, key, operation)
        try:
            self._decide(attempt, compute_fingerprint)
            yield attempt
        finally:
            attempt.release()

    def _invoke(self, execute: Callable[[], OperationResult]) -> OperationResult:
        try:
            return execute()
        except BaseException:
            self.metrics.error("operation_failed")
            raise

    def _finish(self, outcome: RequestOutcome, started: float) -> RequestOutcome:
        self.metrics.request_duration(time.perf_counter() - started, outcome.kind.value)
        return outcome

    def _decide(self, attempt: RequestAttempt, compute_fingerprint: Callable[[], str]) -> None:
        log = self.logger.bind(idempotency_key=attempt.key, operation=attempt.operation)

        # Steps 1-2: key presence and shape, before any side effect
        try:
            validate_key(attempt.key, self.config.key_max_length)
        except InvalidKeyError as e:
            log.info("idempotency_key_rejected", reason=e.reason)
            attempt.outcome = RequestOutcome.rejected(RejectionReason(e.reason), str(e))
            return

        # Step 3
        attempt.fingerprint = compute_fingerprint()

        try:
            # Step 4: fast path, no lock, no database
            cached = self._read_cached(attempt.key, attempt.operation)
            if cached is not None:
                cached_fingerprint, result = cached
                if self._fingerprint_conflicts(cached_fingerprint, attempt.fingerprint):
                    self.metrics.payload_mismatch()
                    log.info("idempotency_payload_mismatch", source="cache")
                    attempt.outcome = RequestOutcome.mismatch()
                    return
                self.metrics.cache_hit("cache")
                log.debug("idempotency_replayed", source="cache")
                attempt.outcome = RequestOutcome.replayed(result)
                return
            self.metrics.cache_miss()

            # Step 5: non-blocking lock on the key
            attempt._lock = self.cache.acquire_lock(
                request_lock_key(attempt.key), self.config.lock_ttl, wait=self.config.lock_wait
            )
            if attempt._lock is None:
                self.metrics.lock_failed()
                log.info("idempotency_lock_contended")
                attempt.outcome = RequestOutcome.conflict()
                return
            self.metrics.lock_acquired()

            # Step 6: re-check the durable store under the lock
            record = self.store.find(attempt.key, attempt.operation)
            if record is not None:
                attempt.outcome = self._replay_record(attempt, record, log)
                return

        except StoreUnavailableError as e:
            self.metrics.error("store_unavailable")
            if not self.config.fail_open:
                log.error("idempotency_store_unavailable", policy="fail_closed", backend=e.backend, error=str(e))
                attempt.outcome = RequestOutcome.rejected(RejectionReason.STORE_UNAVAILABLE, str(e))
                return
            log.warning("idempotency_store_unavailable", policy="fail_open", backend=e.backend, error=str(e))
            attempt.tracked = False

        if attempt._lock is not None and self.config.lock_renewal:
            attempt._keeper = LockKeeper(self.cache, attempt._lock).start()
        log.info("idempotency_executing", tracked=attempt.tracked)

    def _replay_record(self, attempt: RequestAttempt, record: IdempotencyRecord, log) -> RequestOutcome:
        if self._fingerprint_conflicts(record.payload_fingerprint, attempt.fingerprint):
            self.metrics.payload_mismatch()
            log.info("idempotency_payload_mismatch", source="database")
            return RequestOutcome.mismatch()

        result = OperationResult(
            status_code=record.status_code,
            body=record.response_body,
            headers=dict(record.response_headers or {}),
            body_encoding=record.response_encoding,
        )
        self.metrics.cache_hit("database")
        log.info("idempotency_replayed", source="database", created_at=str(record.created_at))

        # Lock holder repopulates the fast path with the stored fingerprint
        if attempt.holds_lock:
            self._write_cached(attempt.key, attempt.operation, record.payload_fingerprint, result, log)
        return RequestOutcome.replayed(result)

    def _fingerprint_conflicts(self, stored: Optional[str], current: Optional[str]) -> bool:
        # Disabled rejection replays the first stored result whatever the payload
        if not self.config.reject_payload_mismatch:
            return False
        if stored is None or current is None:
            return False
        return stored != current

    def _record_result(self, attempt: RequestAttempt, result: OperationResult) -> RequestOutcome:
        log = self.logger.bind(idempotency_key=attempt.key, operation=attempt.operation)

        if not attempt.tracked:
            return RequestOutcome.executed(result, stored=False)

        # Step 7: failures stay retryable under the same key
        if not self.classifier(result):
            log.info("idempotency_result_not_recorded", status_code=result.status_code)
            return RequestOutcome.executed(result, stored=False)

        # Step 8: durable write first
        record = IdempotencyRecord(
            key=attempt.key,
            operation=attempt.operation,
            payload_fingerprint=attempt.fingerprint,
            status_code=result.status_code,
            response_body=result.body,
            response_encoding=result.body_encoding,
            response_headers=dict(result.headers),
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.store.insert(record)
        except DuplicateRecordError:
            log.warning("idempotency_record_race", note="unique_constraint_rejected_duplicate")
            try:
                existing = self.store.find(attempt.key, attempt.operation)
            except StoreUnavailableError as e:
                log.error("idempotency_record_reread_failed", error=str(e))
                return RequestOutcome.executed(result, stored=False)
            if existing is None:
                return RequestOutcome.executed(result, stored=False)
            return self._replay_record(attempt, existing, log)
        except StoreUnavailableError as e:
            # The operation already ran; report its result but do not cache it
            self.metrics.error("store_unavailable")
            log.error("idempotency_record_persist_failed", backend=e.backend, error=str(e))
            return RequestOutcome.executed(result, stored=False)

        # Step 9: cache only after the durable commit, and only while holding the lock
        if not attempt.holds_lock:
            log.warning("idempotency_cache_write_skipped", reason="lock_lost")
            return RequestOutcome.executed(result, stored=True)
        self._write_cached(attempt.key, attempt.operation, attempt.fingerprint, result, log)
        log.info("idempotency_stored", status_code=result.status_code)
        return RequestOutcome.executed(result, stored=True)

    def _read_cached(self, key: str, operation: str) -> Optional[tuple]:
        raw = self.cache.get(response_cache_key(key, operation))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return data.get("fingerprint"), OperationResult.from_dict(data["result"])
        except (ValueError, KeyError, TypeError):
            # Corrupted value, treat as miss and let the durable store decide
            self.logger.warning("idempotency_cache_corrupted", idempotency_key=key, operation=operation)
            return None

    def _write_cached(self, key: str, operation: str, payload_fingerprint: Optional[str], result: OperationResult, log) -> None:
        entry = json.dumps({"fingerprint": payload_fingerprint, "result": result.to_dict()})
        try:
            self.cache.put(response_cache_key(key, operation), entry.encode("utf-8"), self.config.response_ttl)
        except StoreUnavailableError as e:
            # Record is durable; the next attempt falls through to the database
            self.metrics.error("cache_write_failed")
            log.warning("idempotency_cache_write_failed", error=str(e))

    def _release_lock(self, handle: LockHandle) -> None:
        try:
            if not self.cache.release_lock(handle):
                self.logger.warning("idempotency_lock_expired_before_release", lock_key=handle.key)
        except StoreUnavailableError as e:
            # Lock expires by TTL
            self.metrics.error("lock_release_failed")
            self.logger.error("idempotency_lock_release_failed", lock_key=handle.key, error=str(e))

    # ------------------------------------------------------------------
    # Job path
    # ------------------------------------------------------------------

    def run_keyed_job(self, job: HasIdempotencyKey, body: Callable[[], T]) -> JobOutcome:
        """Run `body` for a job exposing the HasIdempotencyKey capability."""
        return self.run_job(type(job).__name__, job.idempotency_key(), body)

    def run_job(self, job_type: str, key: Optional[str], body: Callable[[], T]) -> JobOutcome:
        """
        Execute a queued job at most once per key.

        Returns:
            EXECUTED with the body's return value, SKIPPED when already done or
            running on another worker, DECLINED when untracked (no key).

        Raises:
            Whatever `body` raises, after the lock is released and the
            completion marker is cleared, so the queue's retry logic re-runs it.
            StoreUnavailableError when the cache is down and fail_open is off.
        """
        if not self.config.job_enabled or not key:
            return JobOutcome.declined(body())

        validate_key(key, self.config.key_max_length)
        log = self.logger.bind(job_type=job_type, idempotency_key=key)
        marker = job_marker_key(key)

        try:
            # Step 2: lock-free "already done" check
            if self.cache.exists(marker):
                return self._skip_job(log, "already_processed")

            # Step 3: another worker running it is not an error
            lock = self.cache.acquire_lock(job_lock_key(key), self.config.job_lock_ttl)
        except StoreUnavailableError as e:
            self.metrics.error("store_unavailable")
            if not self.config.fail_open:
                log.error("job_idempotency_store_unavailable", policy="fail_closed", error=str(e))
                raise
            log.warning("job_idempotency_store_unavailable", policy="fail_open", error=str(e))
            return JobOutcome.declined(body(), reason="store_unavailable")

        if lock is None:
            log.warning("job_already_running")
            return self._skip_job(log, "in_progress")

        keeper = LockKeeper(self.cache, lock).start() if self.config.lock_renewal else None
        try:
            # Step 4: close the race between the check and the lock
            if self.cache.exists(marker):
                return self._skip_job(log, "already_processed")

            # Step 5
            try:
                value = body()
            except BaseException as e:
                self.metrics.job_executed("failed")
                self.metrics.error("job_failed")
                self._clear_marker(marker, log)
                log.error("job_failed_idempotency_key_cleared", error=str(e), exception_type=type(e).__name__)
                raise

            # Step 6
            self.metrics.job_executed("success")
            try:
                self.cache.put(
                    marker,
                    json.dumps({
                        "processed_at": datetime.now(timezone.utc).isoformat(),
                        "job_type": job_type,
                    }).encode("utf-8"),
                    self.config.job_ttl,
                )
            except StoreUnavailableError as e:
                # Raising here would make the queue re-run a job that succeeded
                self.metrics.error("marker_write_failed")
                log.error("job_marker_write_failed", error=str(e))
                return JobOutcome.executed(value)
            log.info("job_executed", ttl=self.config.job_ttl)
            return JobOutcome.executed(value)

        finally:
            if keeper is not None:
                keeper.stop()
            self._release_lock(lock)

    def _skip_job(self, log, reason: str) -> JobOutcome:
        self.metrics.job_skipped(reason)
        log.info("job_skipped", reason=reason)
        return JobOutcome.skipped(reason)

    def _clear_marker(self, marker: str, log) -> None:
        try:
            self.cache.delete(marker)
        except StoreUnavailableError as e:
            # Original job exception is what propagates
            log.error("job_marker_clear_failed", error=str(e))
