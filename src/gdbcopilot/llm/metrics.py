"""Per-provider request counters."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass
class ProviderMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retry_attempts: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    average_latency_ms: float = 0.0
    tokens_used: int = 0
    circuit_breaker_trips: int = 0
    last_request_time: Optional[float] = None
    last_error: Optional[str] = None


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._providers: Dict[str, ProviderMetrics] = {}
        self._context_trims = 0
        self._started = time.time()

    def _get(self, provider: str) -> ProviderMetrics:
        m = self._providers.get(provider)
        if m is None:
            m = ProviderMetrics()
            self._providers[provider] = m
        return m

    def record_request(
        self,
        provider: str,
        latency_s: float,
        success: bool,
        tokens: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            m = self._get(provider)
            m.total_requests += 1
            if success:
                m.successful_requests += 1
            else:
                m.failed_requests += 1
                m.last_error = error
            # running mean over every recorded request
            latency_ms = latency_s * 1000.0
            m.average_latency_ms += (latency_ms - m.average_latency_ms) / m.total_requests
            if tokens:
                m.tokens_used += int(tokens)
            m.last_request_time = time.time()

    def record_retry(self, provider: str) -> None:
        with self._lock:
            self._get(provider).retry_attempts += 1

    def record_cache_hit(self, provider: str) -> None:
        with self._lock:
            self._get(provider).cache_hits += 1

    def record_cache_miss(self, provider: str) -> None:
        with self._lock:
            self._get(provider).cache_misses += 1

    def record_circuit_trip(self, provider: str) -> None:
        with self._lock:
            self._get(provider).circuit_breaker_trips += 1

    def record_context_trim(self) -> None:
        with self._lock:
            self._context_trims += 1

    def provider(self, provider: str) -> ProviderMetrics:
        with self._lock:
            return ProviderMetrics(**asdict(self._get(provider)))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            providers = {name: asdict(m) for name, m in self._providers.items()}
            totals = {
                "total_requests": sum(m.total_requests for m in self._providers.values()),
                "successful_requests": sum(m.successful_requests for m in self._providers.values()),
                "failed_requests": sum(m.failed_requests for m in self._providers.values()),
                "retry_attempts": sum(m.retry_attempts for m in self._providers.values()),
                "cache_hits": sum(m.cache_hits for m in self._providers.values()),
                "cache_misses": sum(m.cache_misses for m in self._providers.values()),
                "tokens_used": sum(m.tokens_used for m in self._providers.values()),
                "circuit_breaker_trips": sum(m.circuit_breaker_trips for m in self._providers.values()),
                "context_trims": self._context_trims,
                "uptime_seconds": time.time() - self._started,
            }
        return {"providers": providers, "global": totals}

    def reset(self) -> None:
        with self._lock:
            self._providers.clear()
            self._context_trims = 0
