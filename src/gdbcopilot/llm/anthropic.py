"""Anthropic Messages API wire shape.

POST {base_url}/v1/messages with ``x-api-key`` and ``anthropic-version``
headers. The system prompt goes in the top-level ``system`` field, so any
system-role history entries are folded into it.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..core.state import ChatMessage, ROLE_SYSTEM

PATH = "/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def build_request(
    api_key: str,
    model: str,
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None,
    max_tokens: Optional[int] = None,
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    headers = {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    system_parts = [system_prompt] if system_prompt else []
    wire: List[Dict[str, str]] = []
    for m in messages:
        if m.role == ROLE_SYSTEM:
            system_parts.append(m.content)
        else:
            wire.append({"role": m.role, "content": m.content})
    body: Dict[str, Any] = {
        "model": model,
        "messages": wire,
        "max_tokens": int(max_tokens or DEFAULT_MAX_TOKENS),
    }
    if system_parts:
        body["system"] = "\n\n".join(system_parts)
    return PATH, headers, body


def extract_text(data: Dict[str, Any]) -> Optional[str]:
    """First text block of ``content``; None when there is none."""
    content = data.get("content")
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
            return block["text"]
    return None


def extract_usage(data: Dict[str, Any], model: str) -> Dict[str, Any]:
    usage: Dict[str, Any] = {"provider": "anthropic", "model": data.get("model") or model}
    raw = data.get("usage")
    if isinstance(raw, dict):
        prompt = raw.get("input_tokens")
        completion = raw.get("output_tokens")
        if isinstance(prompt, int):
            usage["prompt_tokens"] = prompt
        if isinstance(completion, int):
            usage["completion_tokens"] = completion
        if isinstance(prompt, int) and isinstance(completion, int):
            usage["total_tokens"] = prompt + completion
    return usage


def error_message(data: Any) -> Optional[str]:
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        msg = data["error"].get("message")
        if isinstance(msg, str):
            return msg
    return None
