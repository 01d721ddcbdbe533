"""Per-upload structured session log.

Each uploaded executable gets its own ``logs/<session-id>.log`` holding one
JSON object per line. The log is a plain :mod:`logging` logger with a
FileHandler, so the file is released as soon as the handler is closed.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

EVENT_USER_INPUT = "user.input"
EVENT_LLM_REQUEST = "llm.request"
EVENT_LLM_RESPONSE = "llm.response"
EVENT_LLM_RETRY = "llm.retry"
EVENT_GDB_COMMAND = "gdb.command"
EVENT_GDB_OUTPUT = "gdb.output"
EVENT_CHAT_PARSE = "chat.parse"
EVENT_CHAT_RESULT = "chat.result"
EVENT_CACHE_HIT = "cache.hit"
EVENT_CONTEXT_TRIMMED = "context.trimmed"
EVENT_ERROR = "error"

SESSION_LOGGER_NAME = "gdbcopilot.session"

_RESERVED = {"timestamp", "level", "event.type", "session.id", "message"}


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


class JsonLinesFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "event.type": getattr(record, "event_type", "log"),
            "session.id": getattr(record, "session_id", ""),
            "message": record.getMessage(),
        }
        payload = getattr(record, "payload", None) or {}
        for key, value in payload.items():
            entry[key if key not in _RESERVED else f"payload.{key}"] = value
        return json.dumps(entry, ensure_ascii=False, default=str)


class _SessionFilter(logging.Filter):
    def __init__(self, session_id: str) -> None:
        super().__init__()
        self.session_id = session_id

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "session_id", None) == self.session_id


class SessionLogger:
    """Writes one session's events through the shared ``gdbcopilot.session`` logger.

    Each session owns a FileHandler filtered on its session id, so loggers
    that overlap during rotation never write into each other's file.
    """

    def __init__(self, session_id: str, path: Path, executable: Optional[str] = None) -> None:
        self.session_id = session_id
        self.path = Path(path)
        self.executable = executable
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(SESSION_LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        self._handler: Optional[logging.Handler] = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(JsonLinesFormatter())
        self._handler.addFilter(_SessionFilter(session_id))
        self.logger.addHandler(self._handler)

    @classmethod
    def create(cls, log_dir: str | Path, executable: Optional[str] = None) -> "SessionLogger":
        session_id = new_session_id()
        return cls(session_id, Path(log_dir) / f"{session_id}.log", executable=executable)

    @property
    def closed(self) -> bool:
        return self._handler is None

    def event(self, event_type: str, message: str, level: int = logging.INFO, **payload: Any) -> None:
        if self._handler is None:
            return
        self.logger.log(
            level,
            message,
            extra={"event_type": event_type, "session_id": self.session_id, "payload": payload},
        )

    def error(self, message: str, **payload: Any) -> None:
        self.event(EVENT_ERROR, message, level=logging.ERROR, **payload)

    def close(self) -> None:
        if self._handler is not None:
            self.logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None


class SessionLogHolder:
    """The one active session log; may be empty before the first upload."""

    def __init__(self, logger: Optional[SessionLogger] = None) -> None:
        self._lock = threading.Lock()
        self._current = logger

    def get(self) -> Optional[SessionLogger]:
        with self._lock:
            return self._current

    def set(self, logger: Optional[SessionLogger]) -> None:
        """Install *logger*, closing the previous one."""
        with self._lock:
            previous, self._current = self._current, logger
        if previous is not None and previous is not logger:
            previous.close()

    def event(self, event_type: str, message: str, level: int = logging.INFO, **payload: Any) -> None:
        current = self.get()
        if current is not None:
            current.event(event_type, message, level=level, **payload)

    def error(self, message: str, **payload: Any) -> None:
        self.event(EVENT_ERROR, message, level=logging.ERROR, **payload)

    def close(self) -> None:
        self.set(None)
