"""Keep chat requests under a token budget.

Token counts are estimated at four characters per token, per text field.
Trimming runs in stages and stops as soon as the request fits:

1. summarise old history into one system message (only past the compression threshold)
2. keep only the most recent history messages
3. shorten large context attachments
4. drop remaining history, then cut the largest remaining fields
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from ..core.state import ChatMessage, ChatRequest, ContextItem, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER

logger = logging.getLogger(__name__)

TRUNCATED_SUFFIX = "... [truncated]"
LARGE_ITEM_TOKENS = 500
TRUNCATE_TO_CHARS = 200
TOPIC_CHARS = 50


def estimate_text_tokens(text: str | None) -> int:
    return len(text or "") // 4


def estimate_item_tokens(item: ContextItem) -> int:
    return estimate_text_tokens(item.description) + estimate_text_tokens(item.content)


def estimate_tokens(request: ChatRequest) -> int:
    total = estimate_text_tokens(request.message)
    total += sum(estimate_text_tokens(m.content) for m in request.history)
    total += sum(estimate_item_tokens(c) for c in request.context)
    return total


def truncate_content(content: str, limit: int) -> str:
    """Cut *content* to *limit* chars, backing up to a space if one is past halfway."""
    if len(content) <= limit:
        return content
    cut = content[:limit]
    space = cut.rfind(" ")
    if space > limit // 2:
        cut = content[:space]
    return cut + TRUNCATED_SUFFIX


def extract_topic(content: str) -> str:
    if len(content) > TOPIC_CHARS:
        return content[:TOPIC_CHARS] + "..."
    return content


def summarize_messages(messages: List[ChatMessage]) -> str:
    users = sum(1 for m in messages if m.role == ROLE_USER)
    assistants = sum(1 for m in messages if m.role == ROLE_ASSISTANT)
    summary = f"Previous conversation with {len(messages)} messages. "
    summary += f"User asked {users} questions, assistant provided {assistants} responses. "
    if messages:
        summary += f"Last topic: {extract_topic(messages[-1].content)}"
    return summary


@dataclass
class ContextConfig:
    enabled: bool = False
    max_tokens: int = 4000
    priority_recent_messages: int = 10
    compression_threshold: int = 100


class ContextManager:
    def __init__(self, config: ContextConfig | None = None) -> None:
        self.config = config or ContextConfig()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def process(self, request: ChatRequest) -> Tuple[ChatRequest, bool]:
        """Return a request that fits the budget and whether anything was trimmed.

        The input request is never modified.
        """
        if not self.config.enabled:
            return request, False
        before = estimate_tokens(request)
        if before <= self.config.max_tokens:
            return request, False

        req = request.copy()
        trimmed = False
        for step in (self.compress_history, self.drop_old_history, self.trim_context, self.enforce_cap):
            if estimate_tokens(req) <= self.config.max_tokens:
                break
            trimmed = step(req) or trimmed

        logger.info(
            "context trimmed: %d -> %d estimated tokens (limit %d)",
            before,
            estimate_tokens(req),
            self.config.max_tokens,
        )
        return req, trimmed

    def compress_history(self, req: ChatRequest) -> bool:
        if len(req.history) <= self.config.compression_threshold:
            return False
        count = len(req.history) - self.config.priority_recent_messages
        if count <= 0:
            return False
        old = req.history[:count]
        summary = ChatMessage(role=ROLE_SYSTEM, content=f"[CONVERSATION SUMMARY: {summarize_messages(old)}]")
        req.history = [summary] + req.history[count:]
        return True

    def drop_old_history(self, req: ChatRequest) -> bool:
        keep = self.config.priority_recent_messages
        if len(req.history) <= keep:
            return False
        req.history = req.history[len(req.history) - keep :] if keep > 0 else []
        return True

    def trim_context(self, req: ChatRequest) -> bool:
        if not req.context:
            return False
        to_save = estimate_tokens(req) - self.config.max_tokens
        saved = 0
        # largest first
        order = sorted(range(len(req.context)), key=lambda i: estimate_item_tokens(req.context[i]), reverse=True)
        for idx in order:
            if saved >= to_save:
                break
            item = req.context[idx]
            tokens = estimate_item_tokens(item)
            if tokens <= LARGE_ITEM_TOKENS or not item.content:
                continue
            shortened = ContextItem(item.type, item.description, truncate_content(item.content, TRUNCATE_TO_CHARS))
            req.context[idx] = shortened
            saved += tokens - estimate_item_tokens(shortened)
        return saved > 0

    def enforce_cap(self, req: ChatRequest) -> bool:
        changed = False
        if req.history:
            req.history = []
            changed = True
        while True:
            over = estimate_tokens(req) - self.config.max_tokens
            if over <= 0:
                return changed
            field_ref, text = self._largest_field(req)
            if not text:
                return changed
            keep = len(text) - over * 4 - 64
            if keep > len(TRUNCATED_SUFFIX):
                new_text = text[:keep] + TRUNCATED_SUFFIX
            else:
                new_text = ""
            self._assign(req, field_ref, new_text)
            changed = True

    @staticmethod
    def _largest_field(req: ChatRequest) -> Tuple[Tuple[str, int], str]:
        best: Tuple[Tuple[str, int], str] = (("message", -1), req.message)
        for i, item in enumerate(req.context):
            for name, value in (("content", item.content or ""), ("description", item.description)):
                if len(value) > len(best[1]):
                    best = ((name, i), value)
        return best

    @staticmethod
    def _assign(req: ChatRequest, ref: Tuple[str, int], value: str) -> None:
        name, idx = ref
        if name == "message":
            req.message = value
        elif name == "content":
            req.context[idx].content = value
        else:
            req.context[idx].description = value

    def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "max_tokens": self.config.max_tokens,
            "priority_recent_messages": self.config.priority_recent_messages,
            "compression_threshold": self.config.compression_threshold,
        }
