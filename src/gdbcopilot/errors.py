"""Error types shared across gdbcopilot.

Provider failures carry an :class:`ErrorKind` and a ``retryable`` flag so the
resilience layer and the web layer can decide what to do without inspecting
message text (message text is still checked as a fallback, see
:func:`is_transient_message`).
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    MODEL = "model"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    INTERNAL = "internal"
    CIRCUIT_OPEN = "circuit_open"


_RETRYABLE_KINDS = {ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.TIMEOUT}

TRANSIENT_MARKERS = (
    "timeout",
    "connection",
    "network",
    "service unavailable",
    "rate limit",
    "502",
    "503",
    "504",
)


class GdbCopilotError(Exception):
    """Base class for all gdbcopilot errors."""


class ConfigError(GdbCopilotError):
    pass


class SettingsError(GdbCopilotError):
    pass


class OperationCancelled(GdbCopilotError):
    """Raised when a cancellation token fires or its deadline passes."""

    def __init__(self, message: str = "operation cancelled", deadline_exceeded: bool = False) -> None:
        super().__init__(message)
        self.deadline_exceeded = deadline_exceeded


class ProviderError(GdbCopilotError):
    def __init__(
        self,
        provider: str,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retryable = kind in _RETRYABLE_KINDS if retryable is None else retryable

    def __repr__(self) -> str:
        return (
            f"ProviderError(provider={self.provider!r}, kind={self.kind.value!r}, "
            f"status_code={self.status_code!r}, retryable={self.retryable!r})"
        )


class CircuitOpenError(ProviderError):
    def __init__(self, provider: str, retry_after: float = 0.0) -> None:
        super().__init__(
            provider,
            ErrorKind.CIRCUIT_OPEN,
            f"circuit breaker is open, retry in {retry_after:.1f}s",
            retryable=False,
        )
        self.retry_after = retry_after


class DebuggerError(GdbCopilotError):
    pass


class DebuggerNotRunning(DebuggerError):
    def __init__(self, message: str = "GDB is not running") -> None:
        super().__init__(message)


class DebuggerStartError(DebuggerError):
    pass


class CaptureTimeout(DebuggerError):
    def __init__(self, message: str = "timed out waiting for the capture window") -> None:
        super().__init__(message)


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code from a provider to an error kind."""
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code >= 500:
        return ErrorKind.NETWORK
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if 400 <= status_code < 500:
        return ErrorKind.VALIDATION
    return ErrorKind.INTERNAL


def is_transient_message(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def is_retryable(exc: BaseException) -> bool:
    """Return True when *exc* is worth another attempt.

    Cancellation and an open circuit are never retried. Provider errors use
    their flag; anything else is retried only when its text looks transient.
    """
    if isinstance(exc, (OperationCancelled, CircuitOpenError)):
        return False
    if isinstance(exc, ProviderError):
        if exc.retryable:
            return True
        if exc.kind in (ErrorKind.AUTH, ErrorKind.VALIDATION):
            return False
        return is_transient_message(exc.message)
    return is_transient_message(str(exc))
