"""Data carried through one chat orchestration."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Mapping


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

COMMAND_OUTPUT_CONTEXT_TYPE = "command_output"
COMMAND_OUTPUT_CONTEXT_DESCRIPTION = "GDB Command Output"


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatMessage":
        return cls(role=str(data.get("role") or ROLE_USER), content=str(data.get("content") or ""))


@dataclass
class ContextItem:
    type: str
    description: str
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.content is not None:
            data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContextItem":
        content = data.get("content")
        return cls(
            type=str(data.get("type") or ""),
            description=str(data.get("description") or ""),
            content=None if content is None else str(content),
        )


def _new_message_list() -> List[ChatMessage]:
    return []


def _new_context_list() -> List[ContextItem]:
    return []


def _new_str_list() -> List[str]:
    return []


@dataclass
class ChatRequest:
    """One user submission: the message, prior turns and attached context."""

    message: str
    history: List[ChatMessage] = field(default_factory=_new_message_list)
    context: List[ContextItem] = field(default_factory=_new_context_list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChatRequest":
        """Build a request from the browser's ``{message, history, sentContext}`` body."""
        history = [ChatMessage.from_dict(m) for m in payload.get("history") or [] if isinstance(m, Mapping)]
        context = [ContextItem.from_dict(c) for c in payload.get("sentContext") or [] if isinstance(c, Mapping)]
        return cls(message=str(payload.get("message") or ""), history=history, context=context)

    def copy(self) -> "ChatRequest":
        return copy.deepcopy(self)

    def with_context(self, item: ContextItem) -> "ChatRequest":
        clone = self.copy()
        clone.context.append(item)
        return clone

    def fingerprint_payload(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "history": [m.to_dict() for m in self.history],
            "sentContext": [c.to_dict() for c in self.context],
        }


class ParseStrategy(str, Enum):
    FULL_JSON = "full_json"
    FENCED = "fenced"
    EXTRACTED = "extracted"
    FALLBACK = "fallback"


@dataclass
class ActionBlock:
    text: str
    commands: List[str] = field(default_factory=_new_str_list)
    wait_for_output: bool = False
    strategy: ParseStrategy = ParseStrategy.FALLBACK

    @property
    def is_fallback(self) -> bool:
        return self.strategy is ParseStrategy.FALLBACK


class OrchestrationPhase(str, Enum):
    IDLE = "idle"
    PRIMARY_PENDING = "primary-pending"
    PARSED = "parsed"
    EXECUTING = "executing"
    FOLLOW_UP_PENDING = "follow-up-pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChatResult:
    text: str
    executed_commands: List[str] = field(default_factory=_new_str_list)
    combined_output: str = ""
    from_cache: bool = False
    phase: OrchestrationPhase = OrchestrationPhase.DONE
    parse_strategy: Optional[ParseStrategy] = None
    reformatted: bool = False
    follow_up_error: Optional[str] = None
    provider_calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "executed_commands": list(self.executed_commands),
            "combined_output": self.combined_output,
            "from_cache": self.from_cache,
            "phase": self.phase.value,
            "parse_strategy": self.parse_strategy.value if self.parse_strategy else None,
            "reformatted": self.reformatted,
            "follow_up_error": self.follow_up_error,
            "provider_calls": self.provider_calls,
        }
