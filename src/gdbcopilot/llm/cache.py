"""In-memory response cache with TTL expiry and LRU eviction."""
from __future__ import annotations

import copy
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cachetools import TTLCache

from ..core.state import ChatRequest, ChatResult

logger = logging.getLogger(__name__)


def make_cache_key(provider: str, model: str, request: ChatRequest) -> str:
    """Deterministic key over provider, model and the request contents."""
    payload = json.dumps(request.fingerprint_payload(), sort_keys=True, ensure_ascii=False)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
    return f"{provider}:{model}:{digest}"


@dataclass
class CacheEntry:
    value: ChatResult
    created_at: float
    access_count: int = 0


@dataclass
class CacheConfig:
    enabled: bool = False
    ttl: float = 3600.0
    max_size: int = 1000
    sweep: bool = True


class _EntryStore(TTLCache):
    """TTLCache that reports size-driven evictions (expiry is not an eviction)."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float], on_evict: Callable[[str], None]):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        self._on_evict(key)
        return key, value


class ResponseCache:
    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = self._new_store()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def _new_store(self) -> _EntryStore:
        return _EntryStore(max(1, self.config.max_size), self.config.ttl, self._clock, self._evicted)

    def _evicted(self, key: str) -> None:
        self.evictions += 1
        logger.debug("cache evicted %s", key)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def get(self, key: str) -> Optional[ChatResult]:
        """Return a copy of the cached result marked ``from_cache``, or None."""
        with self._lock:
            self._entries.expire()
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            entry.access_count += 1
            self.hits += 1
            value = copy.deepcopy(entry.value)
        value.from_cache = True
        return value

    def set(self, key: str, value: ChatResult) -> None:
        stored = copy.deepcopy(value)
        stored.from_cache = False
        with self._lock:
            self._entries[key] = CacheEntry(value=stored, created_at=self._clock())

    def purge_expired(self) -> int:
        with self._lock:
            stale = list(self._entries.expire())
        if stale:
            logger.debug("cache purged %d expired entries", len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries = self._new_store()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "enabled": self.config.enabled,
                "size": len(self._entries),
                "max_size": self.config.max_size,
                "ttl_seconds": self.config.ttl,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": (self.hits / total) if total else 0.0,
            }

    # Background sweep at a quarter of the TTL
    def start_sweeper(self) -> None:
        if self._sweeper is not None or not self.config.sweep:
            return
        interval = max(1.0, self.config.ttl / 4)
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval):
                self.purge_expired()

        self._sweeper = threading.Thread(target=_loop, name="gdbcopilot-cache-sweep", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None
