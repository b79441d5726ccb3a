from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from turnbound.cancellation import CancelToken
from turnbound.models import Message, StreamEvent, ToolCall
from turnbound.tool import Tool

DeltaCallback = Callable[[StreamEvent], Awaitable[None]]


@dataclass
class ChatResponse:
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.reasoning and not self.tool_calls


@runtime_checkable
class LLMProvider(Protocol):
    @property
    def name(self) -> str: ...

    async def stream_chat(
        self,
        messages: list[Message],
        tools: list[Tool],
        *,
        on_delta: DeltaCallback,
        token: CancelToken,
    ) -> ChatResponse:
        """Stream one model call, forwarding content/reasoning deltas through ``on_delta``.

        Implementations check ``token`` between stream events and raise
        ``TurnCancelledError`` once it is set.
        """
        ...


def create_provider(
    provider_name: str,
    api_key: str,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from turnbound.providers.anthropic_provider import AnthropicProvider

        return AnthropicProvider(api_key, model=model, max_tokens=max_tokens, temperature=temperature)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic'")
