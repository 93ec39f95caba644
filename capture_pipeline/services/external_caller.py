"""
Rate-limited, circuit-broken invoker for external AI and integration calls.

One ExternalCaller exists per external service. Its token bucket and circuit
breaker are the only shared mutable state touched by every worker calling that
service, so both guard their counters with a lock. The caller never retries:
rate limits and timeouts surface as RetryableExternalError and the job queue
decides what happens next.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from capture_pipeline.config import Settings, settings as default_settings
from capture_pipeline.errors import (
    CircuitOpenError,
    RetryableExternalError,
    classify_exception,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


class TokenBucket:
    """Token bucket refilled continuously at rate_per_minute."""

    def __init__(
        self,
        rate_per_minute: float,
        capacity: Optional[float] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")
        self.rate_per_second = rate_per_minute / 60.0
        self.capacity = float(capacity if capacity is not None else max(1.0, rate_per_minute / 6.0))
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
        self._updated = now

    def try_acquire(self) -> float:
        """Take a token if available. Returns 0 on success, else seconds until one is free."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.rate_per_second

    async def acquire(self, max_wait: Optional[float] = None) -> None:
        """Wait for a token; give up with a retryable error past max_wait."""
        waited = 0.0
        while True:
            wait = self.try_acquire()
            if wait == 0.0:
                return
            if max_wait is not None and waited + wait > max_wait:
                raise RetryableExternalError(
                    "Local rate limit reached",
                    user_message="Processing is throttled, will retry",
                    retry_after=wait,
                )
            await asyncio.sleep(wait)
            waited += wait

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after N consecutive terminal failures inside a sliding window.

    Retryable failures are not counted but do reset the run, as does a success.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self, terminal: bool = True) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
                return
            if not terminal:
                # A retryable outcome breaks the run of terminal failures
                self._failures.clear()
                return
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window_seconds:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self._failures.clear()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "state": self._state.value,
                "recent_failures": len(self._failures),
                "opened_at": self._opened_at,
            }


class ExternalCaller:
    """Throttled, circuit-broken invoker for one external service."""

    def __init__(
        self,
        name: str,
        limiter: TokenBucket,
        breaker: CircuitBreaker,
        timeout: float,
    ) -> None:
        self.name = name
        self.limiter = limiter
        self.breaker = breaker
        self.timeout = timeout
        self.stats = {"calls": 0, "failures": 0, "rejected_open": 0}

    @property
    def circuit_open(self) -> bool:
        return self.breaker.state == CircuitState.OPEN

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if not self.breaker.allow_request():
            self.stats["rejected_open"] += 1
            raise CircuitOpenError(
                f"{self.name} circuit is open",
                user_message=f"{self.name} is unavailable right now",
                service=self.name,
            )
        try:
            await self.limiter.acquire(max_wait=self.timeout)
            self.stats["calls"] += 1
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
        except asyncio.CancelledError:
            self.breaker.release_trial()
            raise
        except Exception as e:
            error = classify_exception(e, service=self.name)
            self.stats["failures"] += 1
            self.breaker.record_failure(terminal=not error.retryable)
            logger.warning(f"{self.name} call failed ({type(error).__name__}): {error.message}")
            if error is e:
                raise
            raise error from e
        self.breaker.record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tokens_available": round(self.limiter.available, 2),
            "circuit": self.breaker.snapshot(),
            **self.stats,
        }


class ExternalCallerRegistry:
    """One caller per external service, built from settings."""

    def __init__(self, config: Optional[Settings] = None, clock: Clock = time.monotonic) -> None:
        config = config or default_settings
        self._callers: Dict[str, ExternalCaller] = {}
        limits = {
            "transcription": config.transcription_rpm,
            "enrichment": config.enrichment_rpm,
            "integration": config.integration_rpm,
        }
        for name, rpm in limits.items():
            self._callers[name] = ExternalCaller(
                name,
                TokenBucket(rpm, clock=clock),
                CircuitBreaker(
                    failure_threshold=config.circuit_failure_threshold,
                    window_seconds=config.circuit_window_seconds,
                    cooldown_seconds=config.circuit_cooldown_seconds,
                    clock=clock,
                ),
                timeout=config.stage_timeouts[name],
            )

    def get(self, name: str) -> ExternalCaller:
        return self._callers[name]

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: caller.snapshot() for name, caller in self._callers.items()}
