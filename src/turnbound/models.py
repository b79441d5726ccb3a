from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

VALID_ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})


def unix_now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class Session:
    id: str
    title: str
    created: int
    updated: int


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class Message:
    role: str
    content: str = ""
    reasoning: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str = ""
    created_at: int = field(default_factory=unix_now)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


@dataclass(frozen=True)
class StoredMessage:
    """A message as read back from the session store, with its row id."""

    id: int
    message: Message


@dataclass(frozen=True)
class StreamEvent:
    kind: str  # "content" | "reasoning"
    text: str


@dataclass(frozen=True)
class StoreBatch:
    session_id: str
    messages: tuple[Message, ...]


def encode_tool_calls(tool_calls: tuple[ToolCall, ...] | list[ToolCall]) -> str:
    return json.dumps([tc.to_dict() for tc in tool_calls], ensure_ascii=True)


def decode_tool_calls(raw: str | None) -> tuple[ToolCall, ...]:
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as ex:
        logger.warning(f"Discarding undecodable tool_calls column: {ex}")
        return ()
    if not isinstance(parsed, list):
        return ()
    calls: list[ToolCall] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        arguments = item.get("arguments")
        calls.append(
            ToolCall(
                id=str(item.get("id", "")),
                name=str(item.get("name", "")),
                arguments=arguments if isinstance(arguments, dict) else {},
            )
        )
    return tuple(calls)
