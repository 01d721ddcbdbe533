"""Run an action block's debugger commands in order, capturing output."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..errors import DebuggerError
from ..utils.io import head_tail_truncate
from ..backends.base import DebuggerEngine
from .cancel import CancelToken

logger = logging.getLogger(__name__)

MAX_COMBINED_CHARS = 20000


@dataclass
class CommandOutcome:
    command: str
    output: str = ""
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def _new_outcome_list() -> List[CommandOutcome]:
    return []


@dataclass
class ExecutionResult:
    outcomes: List[CommandOutcome] = field(default_factory=_new_outcome_list)
    elapsed: float = 0.0

    @property
    def executed_commands(self) -> List[str]:
        return [o.command for o in self.outcomes]

    @property
    def failures(self) -> List[CommandOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def combined_output(self) -> str:
        parts = []
        for o in self.outcomes:
            if o.error is not None:
                parts.append(f"[command failed] {o.command}: {o.error}")
            elif o.output:
                parts.append(o.output)
        return head_tail_truncate("\n".join(parts), MAX_COMBINED_CHARS)

    def summary(self) -> str:
        ok = len(self.outcomes) - len(self.failures)
        return f"Executed {len(self.outcomes)} commands in {self.elapsed:.2f}s: {ok} succeeded, {len(self.failures)} failed"

    def error_summary(self) -> str:
        return "\n".join(f"{o.command}: {o.error}" for o in self.failures)


class CommandExecutor:
    def __init__(self, engine: DebuggerEngine, timeout: float = 2.0) -> None:
        self.engine = engine
        self.timeout = timeout

    def execute(
        self,
        commands: List[str],
        token: Optional[CancelToken] = None,
        on_outcome: Optional[Callable[[CommandOutcome], None]] = None,
    ) -> ExecutionResult:
        """Run *commands* one after another.

        Blank entries are skipped. A failing command is recorded and the
        rest still run. Cancellation stops the sequence and propagates.
        """
        token = token or CancelToken.never()
        result = ExecutionResult()
        started = time.monotonic()
        for raw in commands:
            cmd = raw.strip()
            if not cmd:
                continue
            token.raise_if_cancelled()
            t0 = time.monotonic()
            outcome = CommandOutcome(command=cmd)
            try:
                outcome.output = self.engine.execute_with_capture(cmd, timeout=self.timeout, token=token)
            except DebuggerError as e:
                outcome.error = str(e) or e.__class__.__name__
                logger.warning("gdb command failed: %s: %s", cmd, outcome.error)
            outcome.elapsed = time.monotonic() - t0
            result.outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
        result.elapsed = time.monotonic() - started
        return result
