from __future__ import annotations

from typing import Any

import anthropic
from loguru import logger
from tenacity import retry

from turnbound.cancellation import CancelToken
from turnbound.models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, Message, StreamEvent, ToolCall
from turnbound.provider import ChatResponse, DeltaCallback
from turnbound.providers.common import default_retry_kwargs
from turnbound.tool import Tool

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


def convert_tools(tools: list[Tool]) -> list[dict]:
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def convert_messages(messages: list[Message]) -> tuple[str, list[dict]]:
    """Translate history into Anthropic's (system, messages) request shape.

    System messages are joined into the system prompt. Tool results become
    ``tool_result`` blocks on a user message, and consecutive messages that map
    to the same API role are merged so the request alternates user/assistant.
    """
    system_parts: list[str] = []
    converted: list[dict] = []

    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue

        if msg.role == ROLE_ASSISTANT:
            role = "assistant"
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
        elif msg.role == ROLE_TOOL:
            role = "user"
            blocks = [{"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}]
        else:
            role = "user"
            blocks = [{"type": "text", "text": msg.content}] if msg.content else []

        if not blocks:
            continue
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    return "\n\n".join(system_parts), converted


class AnthropicProvider:
    def __init__(self, api_key: str, *, model: str, max_tokens: int, temperature: float):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def name(self) -> str:
        return "anthropic"

    @retry(**default_retry_kwargs(_TRANSIENT_ERRORS))
    async def stream_chat(
        self,
        messages: list[Message],
        tools: list[Tool],
        *,
        on_delta: DeltaCallback,
        token: CancelToken,
    ) -> ChatResponse:
        token.raise_if_cancelled()
        system_prompt, api_messages = convert_messages(messages)
        api_tools = convert_tools(tools)

        logger.debug(
            f"API request: model={self._model}, max_tokens={self._max_tokens}, "
            f"messages={len(api_messages)}, tools={len(api_tools)}"
        )
        async with self._client.messages.stream(
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            system=system_prompt or anthropic.NOT_GIVEN,
            messages=api_messages,
            tools=api_tools or anthropic.NOT_GIVEN,
        ) as stream:
            async for event in stream:
                token.raise_if_cancelled()
                if event.type != "content_block_delta":
                    continue
                if event.delta.type == "text_delta":
                    await on_delta(StreamEvent("content", event.delta.text))
                elif event.delta.type == "thinking_delta":
                    await on_delta(StreamEvent("reasoning", event.delta.thinking))

            response = await stream.get_final_message()

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        result = ChatResponse(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            stop_reason=response.stop_reason or "",
        )
        text_parts: list[str] = []
        thinking_parts: list[str] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "thinking":
                thinking_parts.append(block.thinking)
            elif block.type == "tool_use":
                result.tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input)))
        result.content = "".join(text_parts)
        result.reasoning = "".join(thinking_parts)
        return result
