"""OpenAI Chat Completions wire shape (POST /v1/chat/completions).

Shared by the OpenAI and OpenRouter providers; the system prompt travels as
a leading system-role message.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..core.state import ChatMessage, ROLE_SYSTEM

PATH = "/v1/chat/completions"


def build_request(
    api_key: str,
    model: str,
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None,
    max_tokens: Optional[int] = None,
    json_mode: bool = False,
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    wire: List[Dict[str, str]] = []
    if system_prompt:
        wire.append({"role": ROLE_SYSTEM, "content": system_prompt})
    wire.extend({"role": m.role, "content": m.content} for m in messages)
    body: Dict[str, Any] = {"model": model, "messages": wire}
    if json_mode:
        body["response_format"] = {"type": "json_object"}
    if max_tokens:
        body["max_tokens"] = int(max_tokens)
    return PATH, headers, body


def extract_text(data: Dict[str, Any]) -> Optional[str]:
    """``choices[0].message.content``; None when missing."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_usage(data: Dict[str, Any], model: str, provider: str = "openai") -> Dict[str, Any]:
    usage: Dict[str, Any] = {"provider": provider, "model": data.get("model") or model}
    raw = data.get("usage")
    if isinstance(raw, dict):
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            iv = _as_int(raw.get(key))
            if iv is not None:
                usage[key] = iv
    return usage


def error_message(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
    return None
