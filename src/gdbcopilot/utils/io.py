"""Text helpers for debugger output."""
from __future__ import annotations

import re

# CSI sequences, including private modes such as bracketed paste (ESC[?2004h)
ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b[()][A-Z0-9]|\x1b[=>]")

GDB_PROMPT = "(gdb) "


def strip_ansi(s: str) -> str:
    return ANSI_RE.sub("", s)


def strip_prompt(line: str) -> str:
    """Remove leading ``(gdb) `` prompts from one output line."""
    while line.startswith(GDB_PROMPT):
        line = line[len(GDB_PROMPT) :]
    if line.strip() == "(gdb)":
        return ""
    return line


def clean_capture(lines: list[str], command: str | None = None) -> str:
    """Join captured lines without prompts, blank prompt lines or the echoed command."""
    out = []
    for raw in lines:
        line = strip_prompt(raw)
        if not line.strip() and raw.strip().startswith("(gdb)"):
            continue
        out.append(line)
    if command is not None and out and out[0].strip() == command.strip():
        out = out[1:]
    while out and not out[-1].strip():
        out.pop()
    return "\n".join(out)


def head_tail_truncate(s: str, max_chars: int = 20000) -> str:
    if len(s) <= max_chars:
        return s
    head = s[: max_chars // 2]
    tail = s[-max_chars // 2 :]
    return head + "\n... [truncated] ...\n" + tail
