from __future__ import annotations

import asyncio
import contextlib
import sqlite3

from loguru import logger

from turnbound.memory.session_store import SessionStore
from turnbound.models import StoreBatch

DEFAULT_QUEUE_SIZE = 64
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 5.0


class WriteBehindQueue:
    """Single background worker that drains message batches into the session store.

    ``enqueue`` never blocks: when the queue is full or closed the batch is
    dropped and logged. Batches that are accepted are written strictly in
    enqueue order.
    """

    def __init__(self, sessions: SessionStore, *, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._sessions = sessions
        self._queue: asyncio.Queue[StoreBatch] = asyncio.Queue(maxsize=max(1, maxsize))
        self._task: asyncio.Task | None = None
        self._closed = False
        self.dropped_batches = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="write-behind")

    def enqueue(self, batch: StoreBatch) -> bool:
        if not batch.messages:
            return True
        if self._closed:
            self.dropped_batches += 1
            logger.warning(f"Store queue closed; dropping batch of {len(batch.messages)} message(s)")
            return False
        try:
            self._queue.put_nowait(batch)
        except asyncio.QueueFull:
            self.dropped_batches += 1
            logger.warning(f"Store queue full; dropping batch of {len(batch.messages)} message(s)")
            return False
        return True

    async def flush(self) -> None:
        """Wait until every batch accepted so far has been written (or failed)."""
        if not self.running:
            return
        await self._queue.join()

    async def close(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS) -> None:
        self._closed = True
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except TimeoutError:
            logger.warning(f"Store queue flush timed out with {self._queue.qsize()} batch(es) unwritten")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                await asyncio.to_thread(self._write, batch)
            finally:
                self._queue.task_done()

    def _write(self, batch: StoreBatch) -> None:
        try:
            self._sessions.save_messages(batch.session_id, batch.messages)
        except sqlite3.Error as ex:
            logger.warning(f"Failed to save batch of {len(batch.messages)} message(s): {ex}")
        except Exception as ex:
            # The worker outlives any single bad batch.
            logger.error(f"Unexpected error saving batch of {len(batch.messages)} message(s): {ex}")
