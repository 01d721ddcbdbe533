from __future__ import annotations

import json
import queue
import threading
from typing import Any, Dict, List, Optional

import pytest
import pexpect

from gdbcopilot.backends.broadcast import OutputBroadcaster
from gdbcopilot.core.orchestrator import ChatOrchestrator
from gdbcopilot.errors import DebuggerNotRunning
from gdbcopilot.llm.cache import CacheConfig, ResponseCache
from gdbcopilot.llm.context import ContextConfig, ContextManager
from gdbcopilot.llm.metrics import MetricsCollector
from gdbcopilot.llm.providers import ProviderReply
from gdbcopilot.llm.resilience import CircuitBreakerConfig, ResilientExecutor, RetryPolicy
from gdbcopilot.session_log import SessionLogHolder
from gdbcopilot.settings import Settings, SettingsStore


def action(text: str, commands: Optional[List[str]] = None, wait: bool = False) -> str:
    return json.dumps({"text": text, "gdbCommands": commands or [], "waitForOutput": wait})


class FakeEngine:
    """Stands in for GdbEngine: records commands and returns canned output."""

    def __init__(self, running: bool = True, outputs: Optional[Dict[str, Any]] = None) -> None:
        self.running = running
        self.outputs = outputs or {}
        self.captured: List[str] = []
        self.sent: List[str] = []
        self.broadcaster = OutputBroadcaster(10)
        self.started_with: Optional[str] = None
        self.executable: Optional[str] = None

    def start(self, executable: str) -> None:
        self.started_with = executable
        self.executable = executable
        self.running = True

    def stop(self) -> None:
        self.running = False

    def is_running(self) -> bool:
        return self.running

    def send_line(self, line: str) -> None:
        if not self.running:
            raise DebuggerNotRunning()
        self.sent.append(line)

    def subscribe(self):
        return self.broadcaster.subscribe()

    def execute_with_capture(self, command: str, timeout=None, token=None) -> str:
        if not self.running:
            raise DebuggerNotRunning()
        self.captured.append(command)
        out = self.outputs.get(command, "")
        if isinstance(out, Exception):
            raise out
        return out


class ScriptedClient:
    """Provider client double returning scripted replies in order."""

    def __init__(self, replies: Optional[List[Any]] = None) -> None:
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def default_model(self, provider: str) -> str:
        return "test-model"

    def send(self, provider, api_key, model, messages, system_prompt=None, max_tokens=None, token=None, json_mode=None):
        self.calls.append(
            {"provider": provider, "model": model, "messages": list(messages), "system_prompt": system_prompt}
        )
        if not self.replies:
            raise AssertionError("unexpected provider call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return ProviderReply(text=reply)

    def test_connection(self, provider, api_key, model=None, token=None):
        return self.send(provider, api_key, model, [])


class FakeChild:
    """Minimal pexpect.spawn double that behaves like an interactive gdb."""

    def __init__(self, responses: Optional[Dict[str, str]] = None) -> None:
        self.responses = responses or {}
        self.sent: List[str] = []
        self.pid = None
        self._alive = True
        self._data: "queue.Queue[Optional[str]]" = queue.Queue()
        self._lock = threading.Lock()
        self.closed = False

    # used before the reader thread starts
    def expect(self, pattern, timeout=None):
        while True:
            try:
                self._data.get_nowait()
            except queue.Empty:
                return 0

    def sendline(self, line: str) -> None:
        with self._lock:
            if not self._alive:
                raise OSError("pty closed")
            self.sent.append(line)
            if line.strip() in ("quit", "q"):
                self._alive = False
                self._data.put(None)
                return
            reply = self.responses.get(line, "")
            text = line + "\r\n"
            if reply:
                text += reply.replace("\n", "\r\n") + "\r\n"
            text += "(gdb) "
            self._data.put(text)

    def read_nonblocking(self, size: int = 1, timeout: Optional[float] = None) -> str:
        try:
            item = self._data.get(timeout=timeout)
        except queue.Empty:
            raise pexpect.TIMEOUT("no data")
        if item is None:
            self._data.put(None)
            raise pexpect.EOF("closed")
        return item

    def die(self) -> None:
        with self._lock:
            self._alive = False
        self._data.put(None)

    def isalive(self) -> bool:
        return self._alive

    def close(self, force: bool = False) -> None:
        self.closed = True
        self.die()


@pytest.fixture
def settings_store(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    store.update(Settings(provider="anthropic", model="claude-test", api_key="sk-test-key"))
    return store


@pytest.fixture
def fast_resilience():
    return ResilientExecutor(
        RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False),
        CircuitBreakerConfig(failure_threshold=5, timeout=30.0),
        metrics=MetricsCollector(),
    )


@pytest.fixture
def make_orchestrator(settings_store, fast_resilience):
    def _make(replies, engine=None, cache_enabled=False, context: Optional[ContextConfig] = None, **kwargs):
        client = ScriptedClient(replies)
        engine = engine if engine is not None else FakeEngine()
        orch = ChatOrchestrator(
            settings_store,
            client,
            fast_resilience,
            engine,
            cache=ResponseCache(CacheConfig(enabled=cache_enabled)),
            context_manager=ContextManager(context or ContextConfig()),
            metrics=fast_resilience.metrics,
            session_logs=SessionLogHolder(),
            **kwargs,
        )
        return orch, client, engine

    return _make
