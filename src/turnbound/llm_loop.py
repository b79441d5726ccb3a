from __future__ import annotations

import dataclasses
import json
from collections.abc import Awaitable, Callable
from typing import Protocol

from loguru import logger

from turnbound.cancellation import CancelToken
from turnbound.models import ROLE_ASSISTANT, ROLE_TOOL, ROLE_USER, Message
from turnbound.provider import ChatResponse, DeltaCallback, LLMProvider
from turnbound.tool_registry import ToolRegistry

DEFAULT_MAX_TOOL_ROUNDS = 60
MAX_EMPTY_RETRIES = 1
REMINDER_INTERVAL = 10

TOOL_LIMIT_MESSAGE = (
    "You have exhausted your tool call limit for this turn. Respond in text only. "
    "Summarize what you accomplished and what remains."
)
REPEAT_WARNING = (
    "<system-reminder>WARNING: You are repeating the same tool call with the same arguments. "
    "This is wasteful. Stop and either try a different approach, summarize what you know, "
    "or ask the user for help.</system-reminder>"
)
_REMINDER_TAG = "\n\n<system-reminder>\n"

UsageCallback = Callable[[int, int], Awaitable[None]]
MessageCallback = Callable[[Message], Awaitable[None]]


class ScratchpadReader(Protocol):
    def content(self) -> str: ...


class EmptyResponseError(RuntimeError):
    pass


async def _stream_and_collect(
    token: CancelToken,
    provider: LLMProvider,
    tools: ToolRegistry | None,
    history: list[Message],
    on_delta: DeltaCallback,
    on_usage: UsageCallback,
) -> ChatResponse:
    tool_list = tools.tools if tools is not None else []
    for attempt in range(MAX_EMPTY_RETRIES + 1):
        token.raise_if_cancelled()
        response = await provider.stream_chat(history, tool_list, on_delta=on_delta, token=token)
        if response.input_tokens or response.output_tokens:
            await on_usage(response.input_tokens, response.output_tokens)
        if not response.is_empty:
            return response
        logger.warning(f"Empty response from provider {provider.name} (attempt {attempt + 1})")
    raise EmptyResponseError(f"empty response from provider {provider.name}")


def _assistant_message(response: ChatResponse) -> Message:
    return Message(
        role=ROLE_ASSISTANT,
        content=response.content,
        reasoning=response.reasoning,
        tool_calls=tuple(response.tool_calls),
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
    )


def inject_recitation(history: list[Message], scratchpad: ScratchpadReader | None, round_number: int) -> None:
    """Append a reminder to the latest tool result every ``REMINDER_INTERVAL`` rounds.

    The scratchpad plan is preferred; the first user request is the fallback.
    Any earlier reminder on the same message is replaced. The change is local
    to the working history and is never persisted.
    """
    if round_number == 0 or round_number % REMINDER_INTERVAL != 0:
        return

    reminder = scratchpad.content() if scratchpad is not None else ""
    if not reminder:
        reminder = next((f"The user's request: {m.content}" for m in history if m.role == ROLE_USER), "")
    if not reminder:
        return

    for i in range(len(history) - 1, -1, -1):
        msg = history[i]
        if msg.role == ROLE_TOOL:
            base = msg.content.split(_REMINDER_TAG, 1)[0]
            history[i] = dataclasses.replace(msg, content=f"{base}{_REMINDER_TAG}{reminder}\n</system-reminder>")
            return


async def process_turn(
    token: CancelToken,
    provider: LLMProvider,
    tools: ToolRegistry | None,
    history: list[Message],
    scratchpad: ScratchpadReader | None,
    on_delta: DeltaCallback,
    on_usage: UsageCallback,
    on_message: MessageCallback,
    *,
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
) -> None:
    """Run the model/tool loop for one turn.

    Every finalized message (assistant reply, tool result, injected user
    note) goes through ``on_message`` before the loop moves on. Once
    ``max_tool_rounds`` is exhausted, one last call is made without tools so
    the model has to answer in text.
    """
    history = list(history)
    recent: list[tuple[str, str]] = []

    for round_number in range(max_tool_rounds):
        inject_recitation(history, scratchpad, round_number)

        response = await _stream_and_collect(token, provider, tools, history, on_delta, on_usage)
        assistant = _assistant_message(response)
        await on_message(assistant)
        history.append(assistant)

        if not assistant.has_tool_calls:
            return
        if tools is None:
            raise RuntimeError("model requested tools but no tool registry is attached")

        results = await tools.execute_all(assistant.tool_calls, token)
        for result in results:
            await on_message(result)
        history.extend(results)

        recent.extend((tc.name, json.dumps(tc.arguments, sort_keys=True)) for tc in assistant.tool_calls)
        if len(recent) >= 3 and recent[-1] == recent[-2] == recent[-3] and results:
            last = history[-1]
            history[-1] = dataclasses.replace(last, content=f"{last.content}\n\n{REPEAT_WARNING}")

    token.raise_if_cancelled()
    limit = Message(role=ROLE_USER, content=TOOL_LIMIT_MESSAGE)
    await on_message(limit)
    history.append(limit)

    response = await _stream_and_collect(token, provider, None, history, on_delta, on_usage)
    await on_message(_assistant_message(response))
