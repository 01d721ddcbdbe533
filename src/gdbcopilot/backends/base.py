"""Debugger engine interface."""
from __future__ import annotations

from typing import Optional, Protocol

from ..core.cancel import CancelToken
from .broadcast import Subscription


class DebuggerEngine(Protocol):
    def start(self, executable: str) -> None:  # pragma: no cover
        ...

    def stop(self) -> None:  # pragma: no cover
        ...

    def send_line(self, line: str) -> None:  # pragma: no cover
        ...

    def subscribe(self) -> Subscription:  # pragma: no cover
        ...

    def execute_with_capture(
        self, command: str, timeout: Optional[float] = None, token: Optional[CancelToken] = None
    ) -> str:  # pragma: no cover
        ...

    def is_running(self) -> bool:  # pragma: no cover
        ...
