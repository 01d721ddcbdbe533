"""GDB subprocess engine using pexpect.

Spawns ``gdb -q <executable>`` on a pseudo-tty. pexpect forks the child into
a new session, so it has its own process group and signals aimed at it never
reach the server. A reader thread drains the pty, publishes each line to live
subscribers and, while a capture window is open, appends it to the capture
buffer.

Capture is time-bounded: gdb gives no reliable end-of-output marker, so
:meth:`GdbEngine.execute_with_capture` returns whatever arrived within the
window. Long-running commands (``run`` on a slow program) return partial
output; the rest still reaches live subscribers.
"""
from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any, Callable, List, Optional

import pexpect

from ..core.cancel import CancelToken
from ..errors import CaptureTimeout, DebuggerNotRunning, DebuggerStartError
from ..utils.io import clean_capture, strip_ansi
from ..utils.tools import find_gdb
from .broadcast import OutputBroadcaster, Subscription

logger = logging.getLogger(__name__)

EXITED_LINE = "[GDB has exited]"

INIT_COMMANDS = [
    "set pagination off",
    "set height 0",
    "set width 0",
    # Avoid blocking confirmations in non-interactive sessions
    "set confirm off",
    # Debuginfod can prompt; older gdb rejects this, which is fine
    "set debuginfod enabled off",
]

_PROMPT_RE = r"\(gdb\)\s"


def _default_spawn(gdb_path: str, args: List[str]) -> Any:
    return pexpect.spawn(gdb_path, args, encoding="utf-8", codec_errors="replace", timeout=None)


class _Process:
    """One spawned gdb and the thread reading it."""

    def __init__(self, child: Any, executable: str, generation: int) -> None:
        self.child = child
        self.executable = executable
        self.generation = generation
        self.alive = True
        self.reader: Optional[threading.Thread] = None
        self.started_at = time.time()


class GdbEngine:
    name = "gdb"

    def __init__(
        self,
        gdb_path: str = "gdb",
        capture_timeout: float = 2.0,
        stop_grace: float = 1.0,
        subscriber_buffer: int = 100,
        command_timeout: float = 30.0,
        spawn: Optional[Callable[[str, List[str]], Any]] = None,
        init_commands: Optional[List[str]] = None,
        init_timeout: float = 5.0,
        read_interval: float = 0.2,
    ) -> None:
        self.gdb_path = gdb_path
        self.capture_timeout = capture_timeout
        self.stop_grace = stop_grace
        self.command_timeout = command_timeout
        self.init_timeout = init_timeout
        self.read_interval = read_interval
        self.init_commands = INIT_COMMANDS if init_commands is None else init_commands
        self._spawn = spawn or _default_spawn
        self.broadcaster = OutputBroadcaster(subscriber_buffer)

        self._proc: Optional[_Process] = None
        self._generation = 0
        self._lifecycle_lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._capture_lock = threading.Lock()
        self._buf_lock = threading.Lock()
        self._capturing = False
        self._captured: List[str] = []

    # Lifecycle
    def start(self, executable: str) -> None:
        """Start gdb on *executable*, stopping any debugger already running."""
        if not executable or not os.path.isfile(executable):
            raise DebuggerStartError(f"executable not found: {executable}")
        gdb = find_gdb(self.gdb_path)
        if gdb is None:
            raise DebuggerStartError(f"gdb not found: {self.gdb_path}")

        with self._lifecycle_lock:
            if self._proc is not None:
                self.stop()
            try:
                child = self._spawn(gdb, ["-q", executable])
            except (pexpect.ExceptionPexpect, OSError) as e:
                raise DebuggerStartError(f"failed to start gdb: {e}") from e
            self._prepare(child)
            self._generation += 1
            proc = _Process(child, executable, self._generation)
            proc.reader = threading.Thread(
                target=self._read_loop, args=(proc,), name=f"gdb-reader-{proc.generation}", daemon=True
            )
            self._proc = proc
            proc.reader.start()
        logger.info("gdb started on %s (pid %s)", executable, getattr(child, "pid", "?"))

    def _prepare(self, child: Any) -> None:
        """Wait for the first prompt and apply the init commands."""
        try:
            child.expect(_PROMPT_RE, timeout=self.init_timeout)
        except (pexpect.TIMEOUT, pexpect.EOF) as e:
            self._kill(child)
            raise DebuggerStartError(f"gdb did not reach its prompt: {e.__class__.__name__}") from e
        for cmd in self.init_commands:
            child.sendline(cmd)
            try:
                child.expect(_PROMPT_RE, timeout=self.init_timeout)
            except pexpect.TIMEOUT:
                logger.debug("gdb init command timed out: %s", cmd)
            except pexpect.EOF as e:
                self._kill(child)
                raise DebuggerStartError("gdb exited during startup") from e

    def stop(self) -> None:
        """Quit gdb, force-killing its process group after the grace period."""
        with self._lifecycle_lock:
            proc = self._proc
            if proc is None:
                return
            child = proc.child
            try:
                with self._write_lock:
                    if child.isalive():
                        child.sendline("quit")
            except (OSError, pexpect.ExceptionPexpect) as e:
                logger.debug("gdb quit failed: %s", e)
            deadline = time.monotonic() + self.stop_grace
            while child.isalive() and time.monotonic() < deadline:
                time.sleep(0.05)
            if child.isalive():
                logger.warning("gdb did not exit within %.1fs; killing process group", self.stop_grace)
            self._kill(child)
            if proc.reader is not None and proc.reader is not threading.current_thread():
                proc.reader.join(timeout=max(1.0, self.read_interval * 5))
            proc.alive = False
            self._proc = None
            self.broadcaster.reset()
        logger.info("gdb stopped")

    @staticmethod
    def _kill(child: Any) -> None:
        pid = getattr(child, "pid", None)
        if pid and child.isalive():
            try:
                os.killpg(os.getpgid(pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError, OSError) as e:
                logger.debug("killpg(%s) failed: %s", pid, e)
        try:
            child.close(force=True)
        except (OSError, pexpect.ExceptionPexpect) as e:
            logger.debug("closing gdb pty failed: %s", e)

    def is_running(self) -> bool:
        proc = self._proc
        return proc is not None and proc.alive

    @property
    def executable(self) -> Optional[str]:
        proc = self._proc
        return proc.executable if proc is not None else None

    # I/O
    def send_line(self, line: str) -> None:
        proc = self._proc
        if proc is None or not proc.alive:
            raise DebuggerNotRunning()
        with self._write_lock:
            try:
                proc.child.sendline(line)
            except (OSError, pexpect.ExceptionPexpect) as e:
                # gdb died before the reader noticed EOF
                proc.alive = False
                logger.warning("write to gdb failed: %s", e)
                raise DebuggerNotRunning() from e

    def subscribe(self) -> Subscription:
        return self.broadcaster.subscribe()

    def execute_with_capture(
        self, command: str, timeout: Optional[float] = None, token: Optional[CancelToken] = None
    ) -> str:
        """Send *command* and return the output seen during the capture window.

        Concurrent captures run one at a time. CaptureTimeout is raised when
        the window can't be opened before the caller's budget runs out.
        """
        token = token or CancelToken.never()
        window = self.capture_timeout if timeout is None else timeout
        if not self.is_running():
            raise DebuggerNotRunning()

        token.raise_if_cancelled()
        if not self._capture_lock.acquire(timeout=token.clamp(self.command_timeout)):
            token.raise_if_cancelled()
            raise CaptureTimeout()
        try:
            if not self.is_running():
                raise DebuggerNotRunning()
            with self._buf_lock:
                self._capturing = True
                self._captured = []
            self.send_line(command)
            token.wait(window)
            with self._buf_lock:
                lines = list(self._captured)
            return clean_capture(lines, command)
        finally:
            with self._buf_lock:
                self._capturing = False
                self._captured = []
            self._capture_lock.release()

    # Reader
    def _emit(self, line: str) -> None:
        line = strip_ansi(line).rstrip("\r")
        self.broadcaster.publish(line)
        with self._buf_lock:
            if self._capturing:
                self._captured.append(line)

    def _read_loop(self, proc: _Process) -> None:
        child = proc.child
        pending = ""
        while True:
            try:
                data = child.read_nonblocking(4096, timeout=self.read_interval)
            except pexpect.TIMEOUT:
                # idle: surface a partial line such as the prompt
                if pending:
                    self._emit(pending)
                    pending = ""
                continue
            except (pexpect.EOF, OSError, ValueError):
                break
            pending += data.replace("\r\n", "\n")
            while "\n" in pending:
                line, pending = pending.split("\n", 1)
                self._emit(line)
        if pending:
            self._emit(pending)
        proc.alive = False
        if self._proc is proc:
            self.broadcaster.publish(EXITED_LINE)
            logger.info("gdb process exited (generation %d)", proc.generation)

    def __del__(self):  # pragma: no cover - best-effort cleanup
        try:
            proc = self._proc
            if proc is not None and proc.child.isalive():
                proc.child.close(force=True)
        except Exception:
            pass
