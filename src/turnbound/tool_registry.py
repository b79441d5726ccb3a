from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from turnbound.cancellation import CancelToken
from turnbound.file_tracker import FileReadTracker
from turnbound.memory.cache import ResultCache
from turnbound.models import ROLE_TOOL, Message, ToolCall
from turnbound.tool import Tool
from turnbound.tools.read_file_tool import ReadFileTool
from turnbound.tools.web.web_fetch_tool import WebFetchTool
from turnbound.tools.write_file_tool import WriteFileTool

DEFAULT_MAX_TOOL_RESULT_CHARS = 40_000


class ToolRegistry:
    def __init__(self, tools: list[Tool], *, max_result_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS):
        self._tools = {t.name: t for t in tools}
        self._max_result_chars = max_result_chars

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, call: ToolCall) -> Message:
        """Run one tool call and wrap its output as a tool-result message.

        Unknown tools and tool exceptions become error text for the model.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            content = f'Error: unknown tool "{call.name}"'
        else:
            try:
                content = await tool.execute(call.arguments)
            except Exception as ex:
                logger.warning(f"Tool {call.name} failed: {ex}")
                content = f'Error executing tool "{call.name}": {ex}'
        return Message(role=ROLE_TOOL, content=self._truncate(call.name, content), tool_call_id=call.id)

    async def execute_all(self, calls: list[ToolCall] | tuple[ToolCall, ...], token: CancelToken) -> list[Message]:
        token.raise_if_cancelled()
        results = await asyncio.gather(*(self.execute(c) for c in calls))
        token.raise_if_cancelled()
        return list(results)

    def _truncate(self, tool_name: str, content: str) -> str:
        if self._max_result_chars <= 0 or len(content) <= self._max_result_chars:
            return content
        logger.warning(
            f"{tool_name} output truncated from {len(content):,} to {self._max_result_chars:,} chars"
        )
        return (
            content[: self._max_result_chars]
            + f"\n\n[OUTPUT TRUNCATED: Showing {self._max_result_chars:,} of {len(content):,} characters]"
        )


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _file_tools(ctx: dict) -> list[Tool]:
    working_directory = ctx["working_directory"]
    tracker = ctx["tracker"]
    return [
        ReadFileTool(working_directory, tracker),
        WriteFileTool(working_directory, tracker),
        WebFetchTool(ctx["cache"]),
    ]


def _web_search_enabled(ctx: dict) -> bool:
    return bool(ctx.get("brave_api_key"))


def _web_search_tools(ctx: dict) -> list[Tool]:
    from turnbound.tools.web.web_search_tool import BraveSearchClient, WebSearchTool

    return [WebSearchTool(BraveSearchClient(ctx["brave_api_key"]), ctx["cache"])]


_GROUPS = [
    ToolGroup(enabled=_always, build=_file_tools),
    ToolGroup(enabled=_web_search_enabled, build=_web_search_tools),
]


def get_all(
    working_directory: str | None = None,
    *,
    tracker: FileReadTracker | None = None,
    cache: ResultCache | None = None,
    brave_api_key: str | None = None,
) -> list[Tool]:
    ctx = {
        "working_directory": working_directory,
        "tracker": tracker,
        "cache": cache,
        "brave_api_key": brave_api_key,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools
