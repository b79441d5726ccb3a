from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from turnbound.cancellation import CancelToken, TurnCancelledError
from turnbound.memory.deltas import DeltaTracker, FileSnapshot
from turnbound.models import Message, StreamEvent
from turnbound.turn_events import (
    ContentDelta,
    HistoryMessage,
    ReasoningDelta,
    TerminalEvent,
    TurnCancelled,
    TurnDone,
    TurnEvent,
    TurnFailed,
    UsageReport,
)

DEFAULT_TURN_QUEUE_SIZE = 500

ProcessTurn = Callable[..., Awaitable[None]]


class TurnEngine:
    """Runs one conversation turn as a background task.

    Everything the turn produces is pushed, in emission order, into a bounded
    queue that a single consumer drains with :meth:`wait_for_events`. Every
    turn ends with exactly one :class:`TerminalEvent`, whatever the exit path.
    """

    def __init__(
        self,
        *,
        process_turn: ProcessTurn,
        provider: Any,
        tools: Any,
        scratchpad: Any = None,
        queue_size: int = DEFAULT_TURN_QUEUE_SIZE,
        delta_tracker: DeltaTracker | None = None,
        snapshot_root: str | None = None,
    ) -> None:
        self._process_turn = process_turn
        self._provider = provider
        self._tools = tools
        self._scratchpad = scratchpad
        self._queue_size = max(1, queue_size)
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._delta_tracker = delta_tracker
        self._snapshot_root = snapshot_root
        self._task: asyncio.Task | None = None
        self._token: CancelToken | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self, history: list[Message]) -> CancelToken:
        if self.running:
            raise RuntimeError("a turn is already running")
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        token = CancelToken()
        self._token = token
        self._task = asyncio.create_task(self.run_turn(token, list(history)), name="turn")
        return token

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()

    async def wait_for_events(self) -> list[TurnEvent]:
        """Block for one event, then take everything else already queued."""
        queue = self._queue
        batch = [await queue.get()]
        while True:
            try:
                batch.append(queue.get_nowait())
            except asyncio.QueueEmpty:
                return batch

    async def run_turn(self, token: CancelToken, history: list[Message]) -> None:
        started_at = time.time()
        started = time.monotonic()
        usage = {"input": 0, "output": 0, "context": 0}
        terminal: TerminalEvent | None = None
        before: dict[str, FileSnapshot] | None = None

        async def on_delta(event: StreamEvent) -> None:
            if event.kind == "reasoning":
                await self._queue.put(ReasoningDelta(event.text))
            else:
                await self._queue.put(ContentDelta(event.text))

        async def on_usage(input_tokens: int, output_tokens: int) -> None:
            usage["input"] += input_tokens
            usage["output"] += output_tokens
            usage["context"] = input_tokens
            await self._queue.put(UsageReport(input_tokens, output_tokens))

        async def on_message(message: Message) -> None:
            await self._queue.put(HistoryMessage(message))

        try:
            before = await self._snapshot()
            await self._process_turn(
                token,
                self._provider,
                self._tools,
                history,
                self._scratchpad,
                on_delta,
                on_usage,
                on_message,
            )
            token.raise_if_cancelled()
            terminal = TurnDone(
                duration_seconds=time.monotonic() - started,
                started_at=started_at,
                input_tokens=usage["input"],
                output_tokens=usage["output"],
                context_tokens=usage["context"],
            )
        except TurnCancelledError:
            logger.info("Turn cancelled")
            terminal = TurnCancelled(time.monotonic() - started)
        except asyncio.CancelledError:
            logger.info("Turn task cancelled")
            terminal = TurnCancelled(time.monotonic() - started)
            raise
        except Exception as ex:
            logger.error(f"Turn failed: {type(ex).__name__}: {ex}")
            terminal = TurnFailed(ex)
        finally:
            if before is not None:
                await self._record_deltas(before)
            if terminal is None:
                terminal = TurnFailed(RuntimeError("turn exited without a result"))
            await self._queue.put(terminal)

    async def _snapshot(self) -> dict[str, FileSnapshot] | None:
        tracker = self._delta_tracker
        if tracker is None or not self._snapshot_root or not tracker.turn_id:
            return None
        return await asyncio.to_thread(tracker.snapshot_dir, self._snapshot_root)

    async def _record_deltas(self, before: dict[str, FileSnapshot]) -> None:
        tracker = self._delta_tracker
        if tracker is None or not self._snapshot_root:
            return
        try:
            after = await asyncio.to_thread(tracker.snapshot_dir, self._snapshot_root)
            await asyncio.to_thread(tracker.record_deltas, self._snapshot_root, before, after)
        except OSError as ex:
            logger.warning(f"Failed to record file deltas: {ex}")
