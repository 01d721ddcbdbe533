"""Prompt text sent to the model.

The JSON contract here is what :mod:`gdbcopilot.core.parser` expects back;
change both together.
"""
from __future__ import annotations

from typing import Iterable

from ..core.state import ContextItem

SYSTEM_PROMPT = (
    "You are an AI assistant that helps with programming and debugging.\n"
    "\n"
    "YOU MUST RESPOND IN VALID JSON FORMAT according to this structure:\n"
    "{\n"
    '  "text": "Your explanation or message to the user",\n'
    '  "gdbCommands": ["command1", "command2", "..."],\n'
    '  "waitForOutput": true/false\n'
    "}\n"
    "\n"
    "Do not include any text outside the JSON structure. Your entire response must be a single JSON object."
)

REFORMAT_PROMPT_TEMPLATE = (
    "ERROR: Your previous response was not in the required JSON format.\n"
    "\n"
    "YOU MUST RESPOND WITH VALID JSON ONLY. No text outside the JSON object is allowed.\n"
    "\n"
    "Please reformat your entire response using EXACTLY this JSON structure and nothing else:\n"
    "{\n"
    '  "text": "Your explanation or message to the user",\n'
    '  "gdbCommands": ["command1", "command2", "..."],\n'
    '  "waitForOutput": true/false\n'
    "}\n"
    "\n"
    "Original response to reformat:\n"
    "{original}"
)

CONTEXT_HEADER = "\n\n--- Provided Context ---\n"

NOT_RUNNING_SUFFIX = "\n\n(Note: GDB is not running, cannot execute commands)"


def build_reformat_prompt(original: str) -> str:
    return REFORMAT_PROMPT_TEMPLATE.replace("{original}", original)


def render_context(items: Iterable[ContextItem]) -> str:
    """Render context items as the labelled block placed before the user message."""
    parts = []
    for item in items:
        chunk = f"Type: {item.type}\nDescription: {item.description}\n"
        if item.content:
            chunk += f"Content:\n```\n{item.content}\n```\n"
        chunk += "---\n"
        parts.append(chunk)
    if not parts:
        return ""
    return CONTEXT_HEADER + "".join(parts)


def build_user_content(message: str, items: Iterable[ContextItem]) -> str:
    block = render_context(items)
    if not block:
        return message
    return block + message
