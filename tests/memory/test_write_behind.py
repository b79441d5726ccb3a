import asyncio
import threading
import unittest
from unittest import mock

from tests.memory.base import AsyncMemoryStoreTestCase
from turnbound.memory import WriteBehindQueue
from turnbound.models import Message, StoreBatch


def _batch(session_id: str, *texts: str) -> StoreBatch:
    return StoreBatch(session_id, tuple(Message(role="assistant", content=t) for t in texts))


class WriteBehindQueueTests(AsyncMemoryStoreTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self._sid = self._sessions.create_session()

    def _contents(self) -> list[str]:
        return [s.message.content for s in self._sessions.load_messages(self._sid)]

    async def test_batches_are_written_in_enqueue_order(self) -> None:
        queue = WriteBehindQueue(self._sessions, maxsize=16)
        await queue.start()

        for i in range(5):
            self.assertTrue(queue.enqueue(_batch(self._sid, f"m{i}a", f"m{i}b")))
        await queue.flush()

        expected = [f"m{i}{s}" for i in range(5) for s in "ab"]
        self.assertEqual(expected, self._contents())
        await queue.close(1.0)

    async def test_full_queue_drops_without_blocking_and_keeps_order(self) -> None:
        queue = WriteBehindQueue(self._sessions, maxsize=2)
        release = threading.Event()
        real_save = self._sessions.save_messages

        def gated_save(session_id, messages):
            release.wait(5)
            real_save(session_id, messages)

        with mock.patch.object(self._sessions, "save_messages", side_effect=gated_save):
            await queue.start()
            self.assertTrue(queue.enqueue(_batch(self._sid, "first")))
            # Let the worker take "first" and block inside the write.
            while queue.pending:
                await asyncio.sleep(0.01)
            self.assertTrue(queue.enqueue(_batch(self._sid, "second")))
            self.assertTrue(queue.enqueue(_batch(self._sid, "third")))
            self.assertFalse(queue.enqueue(_batch(self._sid, "dropped")))
            release.set()
            await queue.flush()
            self.assertTrue(queue.enqueue(_batch(self._sid, "fourth")))
            await queue.flush()

        self.assertEqual(1, queue.dropped_batches)
        self.assertEqual(["first", "second", "third", "fourth"], self._contents())
        ids = [s.id for s in self._sessions.load_messages(self._sid)]
        self.assertEqual(sorted(ids), ids)
        await queue.close(1.0)

    async def test_close_drains_remaining_batches(self) -> None:
        queue = WriteBehindQueue(self._sessions, maxsize=8)
        await queue.start()
        queue.enqueue(_batch(self._sid, "a"))
        queue.enqueue(_batch(self._sid, "b"))

        await queue.close(2.0)

        self.assertEqual(["a", "b"], self._contents())
        self.assertFalse(queue.running)

    async def test_enqueue_after_close_is_dropped(self) -> None:
        queue = WriteBehindQueue(self._sessions)
        await queue.start()
        await queue.close(1.0)

        self.assertFalse(queue.enqueue(_batch(self._sid, "late")))
        self.assertEqual(1, queue.dropped_batches)
        self.assertEqual([], self._contents())

    async def test_failed_batch_is_logged_and_worker_keeps_going(self) -> None:
        queue = WriteBehindQueue(self._sessions)
        await queue.start()

        queue.enqueue(StoreBatch(self._sid, (Message(role="bogus", content="bad"),)))
        queue.enqueue(_batch(self._sid, "good"))
        await queue.flush()

        self.assertEqual(["good"], self._contents())
        self.assertTrue(queue.running)
        await queue.close(1.0)

    async def test_unexpected_write_error_does_not_stop_the_worker(self) -> None:
        queue = WriteBehindQueue(self._sessions)
        real_save = self._sessions.save_messages
        calls = []

        def flaky_save(session_id, messages):
            calls.append(messages)
            if len(calls) == 1:
                raise TypeError("unsupported content")
            real_save(session_id, messages)

        with mock.patch.object(self._sessions, "save_messages", side_effect=flaky_save):
            await queue.start()
            queue.enqueue(_batch(self._sid, "bad"))
            queue.enqueue(_batch(self._sid, "good"))
            await queue.flush()

        self.assertEqual(2, len(calls))
        self.assertEqual(["good"], self._contents())
        self.assertTrue(queue.running)
        await queue.close(1.0)

    async def test_empty_batch_is_accepted_without_work(self) -> None:
        queue = WriteBehindQueue(self._sessions)
        self.assertTrue(queue.enqueue(StoreBatch(self._sid, ())))
        self.assertEqual(0, queue.pending)


if __name__ == "__main__":
    unittest.main()
