"""Retry with backoff, gated by a per-provider circuit breaker."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from ..core.cancel import CancelToken
from ..errors import CircuitOpenError, OperationCancelled, is_retryable
from .metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    backoff_multiplier: float = 2.0

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Sleep before the attempt following *attempt* (1-based)."""
        d = self.base_delay * (self.backoff_multiplier ** max(0, attempt - 1))
        d = min(d, self.max_delay)
        if self.jitter and d > 0:
            d += d * JITTER_FRACTION * rng()
        return d


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    timeout: float = 30.0


class CircuitBreaker:
    """Closed/open/half-open breaker for one provider.

    ``open`` refuses calls until ``timeout`` seconds have passed since the
    last failure. ``half-open`` lets a single trial call through; its outcome
    closes or reopens the circuit.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_trip = on_trip
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure: Optional[float] = None
        self._trial_in_flight = False
        self.trips = 0
        self.total_successes = 0
        self.total_failures = 0
        self.rejected = 0

    def _refresh(self) -> None:
        if self._state is CircuitState.OPEN and self._last_failure is not None:
            if self._clock() - self._last_failure >= self.config.timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("circuit %s half-open, allowing a trial call", self.name)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not go out."""
        with self._lock:
            self._refresh()
            if self._state is CircuitState.CLOSED:
                return
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            self.rejected += 1
            retry_after = 0.0
            if self._last_failure is not None:
                retry_after = max(0.0, self.config.timeout - (self._clock() - self._last_failure))
        raise CircuitOpenError(self.name, retry_after=retry_after)

    def record_success(self) -> None:
        with self._lock:
            self.total_successes += 1
            if self._state is not CircuitState.CLOSED:
                logger.info("circuit %s closed, provider recovered", self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        tripped = False
        with self._lock:
            self.total_failures += 1
            self._failures += 1
            self._last_failure = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._trial_in_flight = False
                tripped = True
                logger.warning("circuit %s reopened, trial call failed", self.name)
            elif self._state is CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                self._state = CircuitState.OPEN
                tripped = True
                logger.warning("circuit %s opened after %d consecutive failures", self.name, self._failures)
            if tripped:
                self.trips += 1
        if tripped and self._on_trip is not None:
            self._on_trip(self.name)

    def release(self) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure = None
            self._trial_in_flight = False

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._refresh()
            return {
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "failure_threshold": self.config.failure_threshold,
                "timeout_seconds": self.config.timeout,
                "trips": self.trips,
                "total_successes": self.total_successes,
                "total_failures": self.total_failures,
                "rejected_calls": self.rejected,
            }


class ResilientExecutor:
    """Run provider calls with retries and one circuit breaker per provider."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.metrics = metrics
        self._clock = clock
        self._rng = rng
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def breaker(self, provider: str) -> CircuitBreaker:
        with self._lock:
            cb = self._breakers.get(provider)
            if cb is None:
                on_trip = self.metrics.record_circuit_trip if self.metrics else None
                cb = CircuitBreaker(provider, self.breaker_config, clock=self._clock, on_trip=on_trip)
                self._breakers[provider] = cb
            return cb

    def execute(
        self,
        provider: str,
        fn: Callable[[], T],
        token: Optional[CancelToken] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        max_attempts: Optional[int] = None,
    ) -> T:
        """Call *fn* until it succeeds, a terminal error occurs, or attempts run out.

        The breaker is consulted before every attempt and every failed attempt
        counts against it. Cancellation is checked before each attempt and
        during backoff sleeps.
        """
        token = token or CancelToken.never()
        cb = self.breaker(provider)
        attempts = max(1, self.policy.max_attempts if max_attempts is None else max_attempts)
        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            cb.before_call()
            settled = False
            try:
                result = fn()
            except OperationCancelled:
                raise
            except Exception as exc:
                cb.record_failure()
                settled = True
                if attempt >= attempts or not is_retryable(exc):
                    raise
                delay = self.policy.delay(attempt, self._rng)
                logger.warning(
                    "%s attempt %d/%d failed: %s; retrying in %.2fs", provider, attempt, attempts, exc, delay
                )
                if self.metrics is not None:
                    self.metrics.record_retry(provider)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                token.wait(delay)
            else:
                cb.record_success()
                settled = True
                return result
            finally:
                # no outcome recorded, so hand back a half-open trial slot
                if not settled:
                    cb.release()
        raise AssertionError("unreachable")  # pragma: no cover

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: cb.stats() for name, cb in breakers.items()}
