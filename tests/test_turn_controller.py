import asyncio
import shutil
import sqlite3
import unittest
from unittest import mock

from tests.memory.base import make_artifact_dir
from turnbound.file_tracker import FileReadTracker
from turnbound.memory import DeltaTracker, MemoryStore, SessionStore, WriteBehindQueue
from turnbound.models import Message, StreamEvent, ToolCall
from turnbound.turn_controller import (
    INTERRUPTED_MESSAGE,
    INTERRUPTED_TOOL_RESULT,
    ConversationObserver,
    EntryKind,
    TurnController,
    TurnPhase,
)
from turnbound.turn_engine import TurnEngine


class _Script:
    """Scripted stand-in for the model/tool loop.

    Each call pops the next step: a coroutine function taking the same
    arguments as ``process_turn``.
    """

    def __init__(self):
        self.steps = []
        self.histories = []

    def add(self, step) -> None:
        self.steps.append(step)

    async def __call__(self, token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
        self.histories.append(list(history))
        step = self.steps.pop(0)
        await step(token, on_delta, on_usage, on_message)


def _reply(text: str, input_tokens: int = 0, output_tokens: int = 0, effect=None):
    async def step(token, on_delta, on_usage, on_message):
        if effect is not None:
            effect()
        await on_delta(StreamEvent("content", text))
        if input_tokens or output_tokens:
            await on_usage(input_tokens, output_tokens)
        await on_message(Message(role="assistant", content=text))

    return step


class _RecordingObserver(ConversationObserver):
    def __init__(self):
        self.finished = []
        self.undone = []

    def on_turn_finished(self, phase, event) -> None:
        self.finished.append(phase)

    def on_undo_finished(self, restored, error) -> None:
        self.undone.append((sorted(restored), error))


class _Indexer:
    def __init__(self):
        self.updated = []

    def update_file(self, path: str) -> None:
        self.updated.append(path)


class TurnControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp_dir = make_artifact_dir(self)
        self._root = self._tmp_dir / "work"
        self._root.mkdir()
        self._store = MemoryStore(str(self._tmp_dir / "turnbound.db"))
        self._sessions = SessionStore(self._store)
        self._sid = self._sessions.create_session()
        self._script = _Script()
        self._tracker = DeltaTracker(self._store, session_id=self._sid)
        self._read_tracker = FileReadTracker()
        self._indexer = _Indexer()
        self._observer = _RecordingObserver()
        self._write_behind = WriteBehindQueue(self._sessions)
        await self._write_behind.start()
        self._controller = self._make_controller()
        self._task = asyncio.create_task(self._controller.run())

    def _make_controller(self, **overrides) -> TurnController:
        engine = TurnEngine(
            process_turn=self._script,
            provider=object(),
            tools=object(),
            delta_tracker=self._tracker,
            snapshot_root=str(self._root),
        )
        kwargs = dict(
            session_id=self._sid,
            sessions=self._sessions,
            write_behind=self._write_behind,
            delta_tracker=self._tracker,
            read_tracker=self._read_tracker,
            indexer=self._indexer,
            observer=self._observer,
            system_prompt="be brief",
        )
        kwargs.update(overrides)
        return TurnController(engine, **kwargs)

    async def asyncTearDown(self) -> None:
        await self._controller.close(2.0)
        await self._task
        await self._write_behind.close(2.0)
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    async def _turn(self, text: str) -> None:
        self.assertTrue(await self._controller.submit(text))
        await self._controller.wait_until_idle()

    async def _stored(self) -> list:
        await self._write_behind.flush()
        return self._sessions.load_messages(self._sid)

    async def test_completed_turn_updates_state_and_store(self) -> None:
        self._script.add(_reply("hello", 30, 5))

        await self._turn("hi")

        c = self._controller
        self.assertEqual(TurnPhase.DONE, c.phase)
        self.assertEqual(["user", "assistant"], [m.role for m in c.history])
        self.assertEqual(
            [EntryKind.USER, EntryKind.ASSISTANT, EntryKind.SEPARATOR],
            [e.kind for e in c.display],
        )
        self.assertEqual((30, 5), (c.total_input_tokens, c.total_output_tokens))
        self.assertEqual("", c.streaming_content)
        self.assertEqual(["hi", "hello"], [s.message.content for s in await self._stored()])
        self.assertGreater(c.boundaries[0].durable_message_id, 0)
        sent = self._script.histories[0]
        self.assertEqual(["system", "user"], [m.role for m in sent])

    async def test_undo_restores_files_history_tokens_and_store(self) -> None:
        a = self._root / "a.txt"
        b = self._root / "b.txt"
        self._script.add(_reply("ok1", 10, 2, effect=lambda: a.write_text("v1")))
        self._script.add(_reply("ok2 with more text", 20, 3, effect=lambda: (a.write_text("v2 changed"), b.write_text("new"))))

        await self._turn("first")
        display_after_first = len(self._controller.display)
        history_after_first = len(self._controller.history)
        await self._turn("second")
        second = self._controller.boundaries[-1]
        self._read_tracker.mark_read(str(a))

        self.assertTrue(await self._controller.undo())
        await self._controller.wait_until_idle()

        c = self._controller
        self.assertEqual(display_after_first, len(c.display))
        self.assertEqual(second.display_index, len(c.display))
        self.assertEqual(history_after_first, len(c.history))
        self.assertEqual((10, 2), (c.total_input_tokens, c.total_output_tokens))
        self.assertEqual(1, len(c.boundaries))
        self.assertEqual("v1", a.read_text())
        self.assertFalse(b.exists())
        stored = await self._stored()
        self.assertEqual(["first", "ok1"], [s.message.content for s in stored])
        self.assertTrue(all(s.id < second.durable_message_id for s in stored))
        self.assertEqual(0, len(self._read_tracker))
        self.assertEqual(sorted([str(a), str(b)]), sorted(self._indexer.updated))
        self.assertEqual([(sorted([str(a), str(b)]), None)], self._observer.undone)
        row = self._store.fetchone(
            "SELECT COUNT(*) AS n FROM file_deltas WHERE turn_id = ?", (second.durable_message_id,)
        )
        self.assertEqual(0, int(row["n"]))

    async def test_undo_with_partial_file_restore_still_truncates_store(self) -> None:
        a = self._root / "a.txt"
        b = self._root / "b.txt"
        a.write_text("v0")
        self._script.add(_reply("ok1", effect=lambda: (a.write_text("v1"), b.write_text("new"))))

        await self._turn("first")
        first = self._controller.boundaries[0]

        with mock.patch("pathlib.Path.write_bytes", side_effect=PermissionError("read-only file")):
            self.assertTrue(await self._controller.undo())
            await self._controller.wait_until_idle()

        c = self._controller
        self.assertEqual([], c.history)
        self.assertEqual([], c.boundaries)
        self.assertEqual("v1", a.read_text())
        self.assertFalse(b.exists())
        self.assertEqual([], [s for s in await self._stored() if s.id >= first.durable_message_id])
        [(restored, error)] = self._observer.undone
        self.assertEqual([str(b)], restored)
        self.assertIn("read-only file", error)
        self.assertIn("read-only file", c.last_error)
        self.assertEqual([str(b)], self._indexer.updated)

    async def test_undo_when_restore_raises_unexpectedly_still_truncates_store(self) -> None:
        self._script.add(_reply("ok1"))
        self._script.add(_reply("ok2"))
        await self._turn("first")
        await self._turn("second")
        second = self._controller.boundaries[-1]

        with mock.patch.object(self._tracker, "undo", side_effect=sqlite3.OperationalError("database is locked")):
            self.assertTrue(await self._controller.undo())
            await self._controller.wait_until_idle()

        c = self._controller
        self.assertEqual(["first", "ok1"], [m.content for m in c.history])
        self.assertFalse(c.busy)
        stored = await self._stored()
        self.assertEqual(["first", "ok1"], [s.message.content for s in stored])
        self.assertTrue(all(s.id < second.durable_message_id for s in stored))
        [(restored, error)] = self._observer.undone
        self.assertEqual([], restored)
        self.assertIn("database is locked", error)
        self.assertIn("database is locked", c.last_error)

        # The next undo still works against the remaining turn.
        self.assertTrue(await c.undo())
        await c.wait_until_idle()
        self.assertEqual([], await self._stored())

    async def test_undo_with_nothing_to_undo_is_rejected(self) -> None:
        self.assertFalse(await self._controller.undo())

    async def test_undo_and_submit_rejected_while_streaming(self) -> None:
        started = asyncio.Event()

        async def blocking(token, on_delta, on_usage, on_message):
            await on_delta(StreamEvent("content", "working"))
            started.set()
            while True:
                token.raise_if_cancelled()
                await asyncio.sleep(0.01)

        self._script.add(blocking)
        self.assertTrue(await self._controller.submit("long task"))
        await started.wait()

        self.assertFalse(await self._controller.undo())
        self.assertFalse(await self._controller.submit("another"))
        self.assertEqual(1, len(self._controller.boundaries))

        self.assertTrue(await self._controller.cancel())
        await self._controller.wait_until_idle()
        self.assertEqual(TurnPhase.CANCELLED, self._controller.phase)

    async def test_second_undo_rejected_while_first_in_flight(self) -> None:
        self._script.add(_reply("one"))
        self._script.add(_reply("two"))
        await self._turn("first")
        await self._turn("second")

        results = await asyncio.gather(self._controller.undo(), self._controller.undo(), self._controller.submit("x"))
        await self._controller.wait_until_idle()

        self.assertEqual([True, False, False], results)
        self.assertEqual(1, len(self._controller.boundaries))
        self.assertEqual(["first", "one"], [m.content for m in self._controller.history])

    async def test_cancel_patches_unanswered_tool_calls(self) -> None:
        started = asyncio.Event()
        calls = (ToolCall("t1", "read_file", {"path": "x"}), ToolCall("t2", "read_file", {"path": "y"}))

        async def tool_round(token, on_delta, on_usage, on_message):
            await on_message(Message(role="assistant", content="", tool_calls=calls))
            await on_message(Message(role="tool", content="x body", tool_call_id="t1"))
            started.set()
            while True:
                token.raise_if_cancelled()
                await asyncio.sleep(0.01)

        self._script.add(tool_round)
        await self._controller.submit("read both")
        await started.wait()
        self.assertTrue(await self._controller.cancel())
        await self._controller.wait_until_idle()

        history = self._controller.history
        self.assertEqual(["user", "assistant", "tool", "tool", "assistant"], [m.role for m in history])
        self.assertEqual("t2", history[3].tool_call_id)
        self.assertEqual(INTERRUPTED_TOOL_RESULT, history[3].content)
        self.assertEqual(INTERRUPTED_MESSAGE, history[4].content)
        self.assertIn(EntryKind.NOTICE, [e.kind for e in self._controller.display])
        stored = await self._stored()
        self.assertEqual([m.content for m in history], [s.message.content for s in stored])
        self.assertEqual([TurnPhase.CANCELLED], self._observer.finished)

    async def test_cancel_before_turn_starts_skips_the_model(self) -> None:
        results = await asyncio.gather(self._controller.submit("never mind"), self._controller.cancel())
        await self._controller.wait_until_idle()

        self.assertEqual([True, True], results)
        self.assertEqual(TurnPhase.CANCELLED, self._controller.phase)
        self.assertEqual([], self._script.histories)
        self.assertEqual(["user", "assistant"], [m.role for m in self._controller.history])
        self.assertEqual(INTERRUPTED_MESSAGE, self._controller.history[-1].content)

    async def test_cancel_when_idle_is_rejected(self) -> None:
        self.assertFalse(await self._controller.cancel())

    async def test_failed_turn_shows_error_and_can_be_undone(self) -> None:
        async def failing(token, on_delta, on_usage, on_message):
            raise ConnectionError("provider unreachable")

        self._script.add(failing)
        await self._turn("hi")

        c = self._controller
        self.assertEqual(TurnPhase.ERROR, c.phase)
        self.assertEqual(EntryKind.ERROR, c.display[-1].kind)
        self.assertIn("provider unreachable", c.last_error)

        self.assertTrue(await c.undo())
        await c.wait_until_idle()
        self.assertEqual([], c.history)
        self.assertEqual([], await self._stored())

    async def test_failed_user_save_runs_turn_without_durable_id(self) -> None:
        a = self._root / "a.txt"
        self._script.add(_reply("done", effect=lambda: a.write_text("created")))

        with mock.patch.object(self._sessions, "save_message_sync", side_effect=sqlite3.OperationalError("disk I/O error")):
            await self._turn("hi")

        c = self._controller
        self.assertEqual(TurnPhase.DONE, c.phase)
        self.assertEqual(0, c.boundaries[0].durable_message_id)
        self.assertIn(EntryKind.NOTICE, [e.kind for e in c.display])
        row = self._store.fetchone("SELECT COUNT(*) AS n FROM file_deltas")
        self.assertEqual(0, int(row["n"]))

        self.assertTrue(await c.undo())
        await c.wait_until_idle()
        self.assertEqual([], c.display)
        self.assertTrue(a.exists())
        self.assertEqual(["done"], [s.message.content for s in await self._stored()])


class TurnControllerTrimTests(unittest.IsolatedAsyncioTestCase):
    async def test_old_display_turns_are_trimmed_but_history_is_kept(self) -> None:
        script = _Script()
        for i in range(3):
            script.add(_reply(f"reply {i}"))
        engine = TurnEngine(process_turn=script, provider=object(), tools=object())
        controller = TurnController(engine, session_id="s", max_display_turns=2)
        task = asyncio.create_task(controller.run())

        for i in range(3):
            self.assertTrue(await controller.submit(f"message {i}"))
            await controller.wait_until_idle()

        self.assertEqual(2, len(controller.boundaries))
        self.assertEqual(0, controller.boundaries[0].display_index)
        self.assertEqual("message 1", controller.display[0].text)
        self.assertEqual(6, len(controller.history))

        self.assertTrue(await controller.undo())
        await controller.wait_until_idle()
        self.assertEqual(3, len(controller.display))
        self.assertEqual(4, len(controller.history))

        await controller.close(1.0)
        await task


if __name__ == "__main__":
    unittest.main()
