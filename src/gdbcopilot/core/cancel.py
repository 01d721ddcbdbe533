"""Cancellation tokens shared by the orchestrator and everything below it."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from ..errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """A cancel flag plus an optional monotonic deadline.

    Waits go through :meth:`wait` so they return as soon as the token is
    cancelled. Callbacks registered with :meth:`on_cancel` run once, on the
    thread that calls :meth:`cancel`; they are how in-flight HTTP gets aborted.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._reason = "operation cancelled"
        self.deadline: Optional[float] = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def never(cls) -> "CancelToken":
        return cls(timeout=None)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def clamp(self, timeout: float) -> float:
        """Return *timeout* shortened to the time left before the deadline."""
        left = self.remaining()
        if left is None:
            return timeout
        return min(timeout, left)

    def cancel(self, reason: str = "operation cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            try:
                cb()
            except Exception as exc:  # pragma: no cover - callbacks are best effort
                logger.debug("cancel callback failed: %s", exc)

    def on_cancel(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register *cb*; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)

                def _remove() -> None:
                    with self._lock:
                        if cb in self._callbacks:
                            self._callbacks.remove(cb)

                return _remove
        cb()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason)
        if self.expired:
            raise OperationCancelled("deadline exceeded", deadline_exceeded=True)

    def wait(self, seconds: float) -> None:
        """Sleep for *seconds*, raising OperationCancelled if cancelled first.

        A deadline that falls inside the sleep cuts it short and raises.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        left = self.remaining()
        if left is not None and left < seconds:
            self._event.wait(left)
            self.raise_if_cancelled()
            raise OperationCancelled("deadline exceeded", deadline_exceeded=True)
        if self._event.wait(seconds):
            self.raise_if_cancelled()
