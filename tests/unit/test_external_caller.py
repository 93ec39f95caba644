"""Tests for the token bucket, circuit breaker and external caller."""

import asyncio

import httpx
import pytest

from capture_pipeline.config import Settings
from capture_pipeline.errors import (
    CircuitOpenError,
    RetryableExternalError,
    TerminalExternalError,
    classify_exception,
    error_for_status,
)
from capture_pipeline.services.external_caller import (
    CircuitBreaker,
    CircuitState,
    ExternalCaller,
    ExternalCallerRegistry,
    TokenBucket,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_caller(clock, threshold=3, rpm=600, timeout=1.0):
    return ExternalCaller(
        "enrichment",
        TokenBucket(rpm, capacity=5, clock=clock),
        CircuitBreaker(failure_threshold=threshold, window_seconds=60, cooldown_seconds=30, clock=clock),
        timeout=timeout,
    )


class TestTokenBucket:
    def test_capacity_then_refill(self):
        clock = FakeClock()
        bucket = TokenBucket(60, capacity=2, clock=clock)

        assert bucket.try_acquire() == 0.0
        assert bucket.try_acquire() == 0.0
        wait = bucket.try_acquire()
        assert wait == pytest.approx(1.0)

        clock.advance(1.0)
        assert bucket.try_acquire() == 0.0

    @pytest.mark.asyncio
    async def test_acquire_past_max_wait_is_retryable(self):
        clock = FakeClock()
        bucket = TokenBucket(1, capacity=1, clock=clock)
        await bucket.acquire()

        with pytest.raises(RetryableExternalError):
            await bucket.acquire(max_wait=0.5)


class TestCircuitBreaker:
    def test_opens_after_consecutive_terminal_failures(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, window_seconds=60, cooldown_seconds=30, clock=clock)
        for _ in range(3):
            breaker.record_failure(terminal=True)

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_retryable_failures_do_not_open(self):
        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        for _ in range(5):
            breaker.record_failure(terminal=False)
        assert breaker.state == CircuitState.CLOSED

    def test_retryable_failure_breaks_a_terminal_run(self):
        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        breaker.record_failure(terminal=True)
        breaker.record_failure(terminal=False)
        breaker.record_failure(terminal=True)
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure(terminal=True)
        assert breaker.state == CircuitState.OPEN

    def test_failures_outside_window_are_forgotten(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, window_seconds=10, clock=clock)
        breaker.record_failure()
        breaker.record_failure()
        clock.advance(11)
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_allows_a_single_trial(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_failed_trial_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)
        assert breaker.allow_request()

        breaker.record_failure(terminal=False)
        assert breaker.state == CircuitState.OPEN


class TestExternalCaller:
    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self):
        clock = FakeClock()
        caller = make_caller(clock, threshold=2)
        calls = []

        async def failing():
            calls.append(1)
            raise TerminalExternalError("bad request")

        for _ in range(2):
            with pytest.raises(TerminalExternalError):
                await caller.call(failing)

        with pytest.raises(CircuitOpenError):
            await caller.call(failing)
        assert len(calls) == 2
        assert caller.circuit_open

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        caller = make_caller(FakeClock(), timeout=0.01)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(RetryableExternalError):
            await caller.call(slow)
        assert caller.breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_passes_result_through(self):
        caller = make_caller(FakeClock())

        async def ok(value):
            return value * 2

        assert await caller.call(ok, 21) == 42
        assert caller.snapshot()["calls"] == 1

    def test_registry_builds_one_caller_per_service(self, tmp_path):
        registry = ExternalCallerRegistry(Settings(db_path=tmp_path / "x.db", transcription_rpm=50))
        snapshot = registry.snapshot()
        assert set(snapshot) == {"transcription", "enrichment", "integration"}
        assert registry.get("transcription").timeout == 30.0
        assert registry.get("transcription") is registry.get("transcription")


class TestErrorClassification:
    def test_rate_limit_is_retryable_but_quota_is_terminal(self):
        assert error_for_status(429, "slow down").retryable
        assert not error_for_status(429, '{"error": {"code": "insufficient_quota"}}').retryable

    def test_server_errors_retry_and_auth_errors_do_not(self):
        assert error_for_status(503).retryable
        assert not error_for_status(401).retryable
        assert not error_for_status(400, "bad audio").retryable

    def test_transport_errors_are_retryable(self):
        error = classify_exception(httpx.ConnectError("connection refused"), service="transcription")
        assert isinstance(error, RetryableExternalError)
        assert error.service == "transcription"

    def test_unknown_errors_are_terminal(self):
        error = classify_exception(ValueError("unexpected shape"))
        assert isinstance(error, TerminalExternalError)
