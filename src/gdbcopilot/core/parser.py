"""Extract the action block from a model reply.

Models are asked for a bare JSON object but often wrap it in a markdown fence
or surround it with prose. :func:`parse_reply` tries, in order, the whole
reply, the reply with a fence stripped, and the first balanced ``{...}`` slice
that decodes to a valid block. If none works the reply itself becomes the text.
"""
from __future__ import annotations

import json
import re
from typing import Any, Iterator, List, Optional, Tuple

from .state import ActionBlock, ParseStrategy

EMPTY_REPLY_TEXT = "(empty response from model)"

_FENCE_OPEN_RE = re.compile(r"^```(?:json|JSON)?[ \t]*\r?\n?")
_FENCE_CLOSE_RE = re.compile(r"\r?\n?```\s*$")


def _block_from_obj(obj: Any) -> Optional[ActionBlock]:
    if not isinstance(obj, dict):
        return None
    text = obj.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    raw_cmds = obj.get("gdbCommands")
    if raw_cmds is None:
        raw_cmds = []
    if not isinstance(raw_cmds, list) or not all(isinstance(c, str) for c in raw_cmds):
        return None
    commands: List[str] = list(raw_cmds)
    wait = obj.get("waitForOutput", False)
    if wait is None:
        wait = False
    if not isinstance(wait, bool):
        return None
    return ActionBlock(text=text, commands=commands, wait_for_output=wait)


def _decode(candidate: str) -> Optional[ActionBlock]:
    try:
        obj = json.loads(candidate)
    except ValueError:
        return None
    return _block_from_obj(obj)


def strip_fence(reply: str) -> Optional[str]:
    """Return *reply* without a surrounding ```json fence, or None if unfenced."""
    s = reply.strip()
    if not s.startswith("```"):
        return None
    s = _FENCE_OPEN_RE.sub("", s, count=1)
    s = _FENCE_CLOSE_RE.sub("", s, count=1)
    return s.strip()


def _balanced_spans(s: str) -> List[Tuple[int, int]]:
    """(start, end) of every balanced ``{...}`` in *s*, found in one pass.

    Braces inside JSON string literals of an open object are ignored;
    unmatched braces on either side are skipped.
    """
    spans: List[Tuple[int, int]] = []
    opened: List[int] = []
    in_str = False
    escaped = False
    for i, ch in enumerate(s):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == "{":
            opened.append(i)
        elif ch == "}":
            if opened:
                spans.append((opened.pop(), i))
        elif ch == '"' and opened:
            in_str = True
    spans.sort()
    return spans


def iter_json_objects(s: str) -> Iterator[str]:
    """Yield balanced ``{...}`` slices of *s*, leftmost first."""
    for start, end in _balanced_spans(s):
        yield s[start : end + 1]


def parse_reply(reply: Optional[str]) -> ActionBlock:
    """Parse a model reply. Never raises; ``text`` is never empty."""
    raw = reply or ""

    block = _decode(raw.strip())
    if block is not None:
        block.strategy = ParseStrategy.FULL_JSON
        return block

    unfenced = strip_fence(raw)
    if unfenced is not None:
        block = _decode(unfenced)
        if block is not None:
            block.strategy = ParseStrategy.FENCED
            return block

    for candidate in iter_json_objects(raw):
        block = _decode(candidate)
        if block is not None:
            block.strategy = ParseStrategy.EXTRACTED
            return block

    text = raw if raw.strip() else EMPTY_REPLY_TEXT
    return ActionBlock(text=text, commands=[], wait_for_output=False, strategy=ParseStrategy.FALLBACK)
