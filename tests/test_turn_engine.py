import asyncio
import shutil
import unittest

from tests.memory.base import make_artifact_dir
from turnbound.cancellation import TurnCancelledError
from turnbound.memory import DeltaTracker, MemoryStore, SessionStore
from turnbound.models import Message, StreamEvent
from turnbound.turn_engine import TurnEngine
from turnbound.turn_events import (
    ContentDelta,
    HistoryMessage,
    ReasoningDelta,
    TerminalEvent,
    TurnCancelled,
    TurnDone,
    TurnFailed,
    UsageReport,
)


def _make_engine(process_turn, **kwargs) -> TurnEngine:
    return TurnEngine(process_turn=process_turn, provider=object(), tools=object(), **kwargs)


async def _drain(engine: TurnEngine) -> list:
    events = []
    while not events or not isinstance(events[-1], TerminalEvent):
        events.extend(await engine.wait_for_events())
    return events


class TurnEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_events_arrive_in_emission_order_and_end_with_done(self) -> None:
        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            await on_delta(StreamEvent("reasoning", "thinking"))
            for piece in ("Hel", "lo", " there"):
                await on_delta(StreamEvent("content", piece))
            await on_usage(120, 7)
            await on_message(Message(role="assistant", content="Hello there"))

        engine = _make_engine(process_turn)
        engine.start([Message(role="user", content="hi")])
        events = await _drain(engine)

        self.assertIsInstance(events[0], ReasoningDelta)
        text = "".join(e.text for e in events if isinstance(e, ContentDelta))
        self.assertEqual("Hello there", text)
        self.assertIsInstance(events[-2], HistoryMessage)
        done = events[-1]
        self.assertIsInstance(done, TurnDone)
        self.assertEqual(120, done.input_tokens)
        self.assertEqual(7, done.output_tokens)
        self.assertEqual(120, done.context_tokens)
        self.assertEqual(1, sum(isinstance(e, TerminalEvent) for e in events))
        self.assertEqual(1, sum(isinstance(e, UsageReport) for e in events))

    async def test_cancelled_turn_ends_with_cancelled(self) -> None:
        started = asyncio.Event()

        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            await on_delta(StreamEvent("content", "partial"))
            started.set()
            while True:
                token.raise_if_cancelled()
                await asyncio.sleep(0.01)

        engine = _make_engine(process_turn)
        engine.start([])
        await started.wait()
        engine.cancel()
        events = await _drain(engine)

        self.assertIsInstance(events[-1], TurnCancelled)
        self.assertEqual(1, sum(isinstance(e, TerminalEvent) for e in events))

    async def test_cancel_after_work_finished_still_reports_cancelled(self) -> None:
        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            token.cancel()

        engine = _make_engine(process_turn)
        engine.start([])
        events = await _drain(engine)

        self.assertIsInstance(events[-1], TurnCancelled)

    async def test_failure_ends_with_failed_carrying_the_error(self) -> None:
        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            await on_delta(StreamEvent("content", "so far"))
            raise ConnectionError("upstream went away")

        engine = _make_engine(process_turn)
        engine.start([])
        events = await _drain(engine)

        self.assertIsInstance(events[0], ContentDelta)
        failed = events[-1]
        self.assertIsInstance(failed, TurnFailed)
        self.assertIsInstance(failed.error, ConnectionError)

    async def test_task_cancellation_still_emits_terminal_event(self) -> None:
        started = asyncio.Event()

        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            started.set()
            await asyncio.sleep(60)

        engine = _make_engine(process_turn)
        engine.start([])
        await started.wait()
        engine.task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await engine.task
        events = await engine.wait_for_events()

        self.assertIsInstance(events[-1], TurnCancelled)

    async def test_start_while_running_is_rejected(self) -> None:
        gate = asyncio.Event()

        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            await gate.wait()

        engine = _make_engine(process_turn)
        engine.start([])
        with self.assertRaises(RuntimeError):
            engine.start([])
        gate.set()
        await _drain(engine)
        self.assertFalse(engine.running)

    async def test_wait_for_events_drains_everything_already_queued(self) -> None:
        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            for i in range(20):
                await on_delta(StreamEvent("content", str(i)))

        engine = _make_engine(process_turn)
        engine.start([])
        await engine.task

        batch = await engine.wait_for_events()

        self.assertEqual(21, len(batch))
        self.assertIsInstance(batch[-1], TurnDone)

    async def test_history_is_copied_for_the_turn(self) -> None:
        seen = []

        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            history.append(Message(role="assistant", content="appended"))
            seen.append(len(history))

        engine = _make_engine(process_turn)
        history = [Message(role="user", content="hi")]
        engine.start(history)
        await _drain(engine)

        self.assertEqual([2], seen)
        self.assertEqual(1, len(history))


class TurnEngineDeltaTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp_dir = make_artifact_dir(self)
        self._root = self._tmp_dir / "work"
        self._root.mkdir()
        self._store = MemoryStore(str(self._tmp_dir / "turnbound.db"))
        self._sid = SessionStore(self._store).create_session()
        self._tracker = DeltaTracker(self._store, session_id=self._sid)

    async def asyncTearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    async def test_deltas_are_recorded_even_when_the_turn_fails(self) -> None:
        target = self._root / "notes.txt"
        target.write_text("before")

        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            target.write_text("after the edit")
            raise RuntimeError("model error")

        self._tracker.begin_turn(42)
        engine = _make_engine(process_turn, delta_tracker=self._tracker, snapshot_root=str(self._root))
        engine.start([])
        events = await _drain(engine)
        self.assertIsInstance(events[-1], TurnFailed)

        restored = self._tracker.undo(self._sid, 42)

        self.assertEqual([str(target)], restored)
        self.assertEqual("before", target.read_text())

    async def test_no_snapshot_without_a_turn_id(self) -> None:
        target = self._root / "notes.txt"

        async def process_turn(token, provider, tools, history, scratchpad, on_delta, on_usage, on_message):
            target.write_text("created")

        engine = _make_engine(process_turn, delta_tracker=self._tracker, snapshot_root=str(self._root))
        engine.start([])
        await _drain(engine)

        row = self._store.fetchone("SELECT COUNT(*) AS n FROM file_deltas")
        self.assertEqual(0, int(row["n"]))


if __name__ == "__main__":
    unittest.main()
