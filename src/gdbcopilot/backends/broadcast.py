"""Fan debugger output out to live subscribers.

Each subscriber owns a bounded queue. Publishing never blocks: a line is
dropped for any subscriber whose queue is full.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import List, Optional

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, owner: "OutputBroadcaster", maxsize: int) -> None:
        self._owner = owner
        self.queue: "queue.Queue[str]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next line, or None if nothing arrived within *timeout*."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[str]:
        lines = []
        while True:
            try:
                lines.append(self.queue.get_nowait())
            except queue.Empty:
                return lines

    def close(self) -> None:
        self._owner.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class OutputBroadcaster:
    def __init__(self, buffer_size: int = 100) -> None:
        self.buffer_size = buffer_size
        self._subs: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.buffer_size)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
        sub.closed = True

    def publish(self, line: str) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            try:
                sub.queue.put_nowait(line)
            except queue.Full:
                sub.dropped += 1

    def reset(self) -> None:
        """Discard anything still queued so a new debugger starts clean."""
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.drain()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)
