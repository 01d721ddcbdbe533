"""OpenRouter: the OpenAI request shape plus identification headers."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..core.state import ChatMessage
from . import openai_compat

DEFAULT_REFERER = "http://localhost:8080"
DEFAULT_TITLE = "gdbcopilot"


def build_request(
    api_key: str,
    model: str,
    messages: List[ChatMessage],
    system_prompt: Optional[str] = None,
    max_tokens: Optional[int] = None,
    json_mode: bool = False,
    referer: str = DEFAULT_REFERER,
    title: str = DEFAULT_TITLE,
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    path, headers, body = openai_compat.build_request(
        api_key, model, messages, system_prompt=system_prompt, max_tokens=max_tokens, json_mode=json_mode
    )
    headers["HTTP-Referer"] = referer or DEFAULT_REFERER
    if title:
        headers["X-Title"] = title
    return path, headers, body


def extract_usage(data: Dict[str, Any], model: str) -> Dict[str, Any]:
    usage = openai_compat.extract_usage(data, model, provider="openrouter")
    raw = data.get("usage")
    if isinstance(raw, dict):
        # OpenRouter may report cost under different keys
        for cost_key in ("total_cost", "total_cost_usd", "cost"):
            try:
                usage["cost"] = float(raw[cost_key])
                break
            except (KeyError, TypeError, ValueError):
                continue
    return usage


extract_text = openai_compat.extract_text
error_message = openai_compat.error_message
