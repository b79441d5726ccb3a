from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from loguru import logger

from turnbound.file_tracker import FileReadTracker
from turnbound.memory.deltas import DeltaRestoreError, DeltaTracker
from turnbound.memory.session_store import SessionStore
from turnbound.memory.write_behind import WriteBehindQueue
from turnbound.models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ROLE_USER, Message, StoreBatch
from turnbound.turn_engine import TurnEngine
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

INTERRUPTED_MESSAGE = "The user interrupted me."
INTERRUPTED_TOOL_RESULT = "Error: the user interrupted this tool call before it returned."
DEFAULT_MAX_DISPLAY_TURNS = 50


class TurnPhase(Enum):
    IDLE = "idle"
    PENDING = "pending"
    STREAMING = "streaming"
    CANCELLING = "cancelling"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


_BUSY_PHASES = frozenset({TurnPhase.PENDING, TurnPhase.STREAMING, TurnPhase.CANCELLING})


class EntryKind(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    NOTICE = "notice"
    ERROR = "error"
    SEPARATOR = "separator"


@dataclass(frozen=True)
class ConversationEntry:
    kind: EntryKind
    text: str


@dataclass
class TurnBoundary:
    """Undo anchor for one user turn.

    ``durable_message_id`` stays 0 until the user message is stored and is
    never changed after that.
    """

    display_index: int
    history_index: int
    input_tokens_at_start: int
    output_tokens_at_start: int
    durable_message_id: int = 0


class FileIndexer(Protocol):
    def update_file(self, path: str) -> None: ...


class ConversationObserver:
    """Receives controller notifications. Every hook is optional."""

    def on_delta(self, event: TurnEvent) -> None:
        pass

    def on_message(self, message: Message) -> None:
        pass

    def on_turn_finished(self, phase: TurnPhase, event: TerminalEvent | None) -> None:
        pass

    def on_undo_finished(self, restored: list[str], error: str | None) -> None:
        pass

    def on_notice(self, text: str) -> None:
        pass


@dataclass
class _Command:
    name: str
    text: str = ""
    future: asyncio.Future | None = None


@dataclass
class _UserMessageSaved:
    boundary: TurnBoundary
    message_id: int
    error: BaseException | None = None


@dataclass
class _EventBatch:
    events: list[TurnEvent] = field(default_factory=list)


@dataclass
class _UndoFinished:
    restored: list[str]
    error: str | None = None


_STOP = object()


class TurnController:
    """Owns all conversation and turn state.

    State is changed only by :meth:`run`, which processes the inbox one item
    at a time. Public methods post commands into the inbox; store writes, the
    turn itself and undo side effects run elsewhere and post their results
    back.
    """

    def __init__(
        self,
        engine: TurnEngine,
        *,
        session_id: str,
        sessions: SessionStore | None = None,
        write_behind: WriteBehindQueue | None = None,
        delta_tracker: DeltaTracker | None = None,
        read_tracker: FileReadTracker | None = None,
        indexer: FileIndexer | None = None,
        observer: ConversationObserver | None = None,
        max_display_turns: int = DEFAULT_MAX_DISPLAY_TURNS,
        system_prompt: str = "",
    ) -> None:
        self._engine = engine
        self.session_id = session_id
        self._sessions = sessions
        self._write_behind = write_behind
        self._delta_tracker = delta_tracker
        self._read_tracker = read_tracker
        self._indexer = indexer
        self._observer = observer or ConversationObserver()
        self._max_display_turns = max(1, max_display_turns)
        self._system_prompt = system_prompt

        self.display: list[ConversationEntry] = []
        self.history: list[Message] = []
        self.boundaries: list[TurnBoundary] = []
        self.phase = TurnPhase.IDLE
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.turn_input_tokens = 0
        self.turn_output_tokens = 0
        self.context_tokens = 0
        self.streaming_content = ""
        self.streaming_reasoning = ""
        self.undo_in_flight = False
        self.last_error: str | None = None

        self._turn_cancelled = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._background: set[asyncio.Task] = set()

    # -- public API (safe to call from any coroutine on the loop) --

    @property
    def busy(self) -> bool:
        return self.phase in _BUSY_PHASES or self.undo_in_flight

    def load_history(self, messages: list[Message]) -> None:
        """Seed state from a resumed session. Resumed turns are not undoable."""
        for message in messages:
            self.history.append(message)
            entry = self._entry_for(message)
            if entry is not None:
                self.display.append(entry)
            self.total_input_tokens += message.input_tokens
            self.total_output_tokens += message.output_tokens

    def model_history(self) -> list[Message]:
        """History as sent to the model: the system prompt followed by the conversation."""
        if not self._system_prompt:
            return list(self.history)
        return [Message(role=ROLE_SYSTEM, content=self._system_prompt), *self.history]

    async def submit(self, text: str) -> bool:
        return await self._command("submit", text)

    async def cancel(self) -> bool:
        return await self._command("cancel")

    async def undo(self) -> bool:
        return await self._command("undo")

    async def wait_until_idle(self) -> None:
        await self._idle.wait()

    async def run(self) -> None:
        while True:
            item = await self._inbox.get()
            if item is _STOP:
                return
            self._handle(item)
            if self.busy:
                self._idle.clear()
            else:
                self._idle.set()

    async def close(self, timeout: float) -> None:
        """Cancel any running turn, wait for the controller to settle, then stop :meth:`run`."""
        if self.busy:
            await self.cancel()
            try:
                await asyncio.wait_for(self.wait_until_idle(), timeout)
            except TimeoutError:
                logger.warning("Timed out waiting for the current turn to stop")
        if self._background:
            await asyncio.wait(self._background, timeout=timeout)
        self._inbox.put_nowait(_STOP)

    # -- inbox handling --

    async def _command(self, name: str, text: str = "") -> bool:
        future = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Command(name, text, future))
        return await future

    def _post(self, item: object) -> None:
        self._inbox.put_nowait(item)

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _handle(self, item: object) -> None:
        if isinstance(item, _Command):
            if item.name == "submit":
                accepted = self._handle_submit(item.text)
            elif item.name == "cancel":
                accepted = self._handle_cancel()
            else:
                accepted = self._handle_undo()
            if item.future is not None and not item.future.done():
                item.future.set_result(accepted)
        elif isinstance(item, _UserMessageSaved):
            self._handle_user_message_saved(item)
        elif isinstance(item, _EventBatch):
            self._handle_event_batch(item.events)
        elif isinstance(item, _UndoFinished):
            self._handle_undo_finished(item)

    def _handle_submit(self, text: str) -> bool:
        if self.busy:
            logger.debug(f"Submission rejected while {self.phase.value} (undo in flight: {self.undo_in_flight})")
            return False

        message = Message(role=ROLE_USER, content=text)
        boundary = TurnBoundary(
            display_index=len(self.display),
            history_index=len(self.history),
            input_tokens_at_start=self.total_input_tokens,
            output_tokens_at_start=self.total_output_tokens,
        )
        self.boundaries.append(boundary)
        self.display.append(ConversationEntry(EntryKind.USER, text))
        self.history.append(message)
        self.turn_input_tokens = 0
        self.turn_output_tokens = 0
        self.context_tokens = 0
        self.phase = TurnPhase.PENDING
        self._spawn(self._save_user_message(boundary, message), name="save-user-message")
        return True

    async def _save_user_message(self, boundary: TurnBoundary, message: Message) -> None:
        if self._sessions is None:
            self._post(_UserMessageSaved(boundary, 0))
            return
        try:
            message_id = await asyncio.to_thread(self._sessions.save_message_sync, self.session_id, message)
        except sqlite3.Error as ex:
            self._post(_UserMessageSaved(boundary, 0, ex))
            return
        self._post(_UserMessageSaved(boundary, message_id))

    def _handle_user_message_saved(self, saved: _UserMessageSaved) -> None:
        if saved.error is not None:
            logger.error(f"Failed to save user message, undo is disabled for this turn: {saved.error}")
            self._notice("Could not save your message; this turn cannot be undone.")
        elif not saved.boundary.durable_message_id:
            saved.boundary.durable_message_id = saved.message_id

        if self._delta_tracker is not None:
            # A zero id stops deltas from being filed under the previous turn.
            self._delta_tracker.begin_turn(saved.boundary.durable_message_id)

        if self._turn_cancelled:
            self._persist(self._patch_interrupted_history())
            self._finish_turn(TurnPhase.CANCELLED, None)
            return

        self.phase = TurnPhase.STREAMING
        self._engine.start(self.model_history())
        self._spawn(self._pump_events(), name="turn-events")

    async def _pump_events(self) -> None:
        while True:
            batch = await self._engine.wait_for_events()
            self._post(_EventBatch(batch))
            if any(isinstance(e, TerminalEvent) for e in batch):
                return

    def _handle_event_batch(self, events: list[TurnEvent]) -> None:
        to_persist: list[Message] = []
        for event in events:
            if isinstance(event, (ContentDelta, ReasoningDelta)):
                if self._turn_cancelled:
                    continue
                if isinstance(event, ContentDelta):
                    self.streaming_content += event.text
                else:
                    self.streaming_reasoning += event.text
                self._observer.on_delta(event)
            elif isinstance(event, UsageReport):
                self.turn_input_tokens += event.input_tokens
                self.turn_output_tokens += event.output_tokens
                self.total_input_tokens += event.input_tokens
                self.total_output_tokens += event.output_tokens
            elif isinstance(event, HistoryMessage):
                self._append_message(event.message)
                to_persist.append(event.message)
            elif isinstance(event, TerminalEvent):
                to_persist.extend(self._handle_terminal(event))
        self._persist(to_persist)

    def _handle_terminal(self, event: TerminalEvent) -> list[Message]:
        patched: list[Message] = []
        if self._turn_cancelled or isinstance(event, TurnCancelled):
            patched = self._patch_interrupted_history()
            self._finish_turn(TurnPhase.CANCELLED, event)
        elif isinstance(event, TurnFailed):
            self.last_error = str(event.error)
            self.display.append(ConversationEntry(EntryKind.ERROR, f"Error: {event.error}"))
            self._finish_turn(TurnPhase.ERROR, event)
        elif isinstance(event, TurnDone):
            self.last_error = None
            self.context_tokens = event.context_tokens
            self.display.append(
                ConversationEntry(
                    EntryKind.SEPARATOR,
                    f"{event.duration_seconds:.0f}s | in {event.input_tokens} | out {event.output_tokens}"
                    f" | total {self.total_input_tokens + self.total_output_tokens}"
                    f" | context {event.context_tokens}",
                )
            )
            self._finish_turn(TurnPhase.DONE, event)
            self.trim_old_turns()
        return patched

    def _finish_turn(self, phase: TurnPhase, event: TerminalEvent | None) -> None:
        self.phase = phase
        self._turn_cancelled = False
        self._clear_streaming()
        self._observer.on_turn_finished(phase, event)

    def _append_message(self, message: Message) -> None:
        self._clear_streaming()
        self.history.append(message)
        entry = self._entry_for(message)
        if entry is not None:
            self.display.append(entry)
        self._observer.on_message(message)

    @staticmethod
    def _entry_for(message: Message) -> ConversationEntry | None:
        if message.role == ROLE_USER:
            return ConversationEntry(EntryKind.USER, message.content)
        if message.role == ROLE_ASSISTANT:
            text = message.content
            for tc in message.tool_calls:
                text = f"{text}\n-> {tc.name}" if text else f"-> {tc.name}"
            return ConversationEntry(EntryKind.ASSISTANT, text) if text else None
        if message.role == ROLE_TOOL:
            return ConversationEntry(EntryKind.TOOL, message.content)
        return None

    def _clear_streaming(self) -> None:
        self.streaming_content = ""
        self.streaming_reasoning = ""

    def _patch_interrupted_history(self) -> list[Message]:
        """Make history valid again after an interrupted turn.

        Unanswered tool calls get a synthetic error result, and the turn is
        closed with an assistant note unless it already ends in a plain
        assistant reply.
        """
        patched: list[Message] = []
        last_call_index = None
        for i in range(len(self.history) - 1, -1, -1):
            if self.history[i].role == ROLE_ASSISTANT and self.history[i].has_tool_calls:
                last_call_index = i
                break
            if self.history[i].role != ROLE_TOOL:
                break

        if last_call_index is not None:
            answered = {m.tool_call_id for m in self.history[last_call_index + 1:] if m.role == ROLE_TOOL}
            for tc in self.history[last_call_index].tool_calls:
                if tc.id not in answered:
                    patched.append(Message(role=ROLE_TOOL, content=INTERRUPTED_TOOL_RESULT, tool_call_id=tc.id))

        last = self.history[-1] if self.history else None
        needs_note = bool(patched) or last is None or last.role != ROLE_ASSISTANT or last.has_tool_calls
        if needs_note:
            patched.append(Message(role=ROLE_ASSISTANT, content=INTERRUPTED_MESSAGE))

        for message in patched:
            self._append_message(message)
        return patched

    def _persist(self, messages: list[Message]) -> None:
        if not messages:
            return
        batch = StoreBatch(self.session_id, tuple(messages))
        if self._write_behind is not None:
            self._write_behind.enqueue(batch)
        elif self._sessions is not None:
            self._spawn(self._save_batch(batch), name="save-batch")

    async def _save_batch(self, batch: StoreBatch) -> None:
        try:
            await asyncio.to_thread(self._sessions.save_messages, batch.session_id, batch.messages)
        except sqlite3.Error as ex:
            logger.warning(f"Failed to save batch of {len(batch.messages)} message(s): {ex}")

    def _handle_cancel(self) -> bool:
        if self.phase not in (TurnPhase.PENDING, TurnPhase.STREAMING):
            return False
        self._turn_cancelled = True
        self._clear_streaming()
        self.display.append(ConversationEntry(EntryKind.NOTICE, "(interrupted)"))
        if self.phase == TurnPhase.STREAMING:
            self._engine.cancel()
        self.phase = TurnPhase.CANCELLING
        return True

    def trim_old_turns(self) -> None:
        """Drop the oldest display turns beyond ``max_display_turns``.

        Dropped turns leave the undo stack for good. Their messages stay in
        the store and in the model history.
        """
        while len(self.boundaries) > self._max_display_turns:
            cut = self.boundaries[1].display_index
            del self.display[:cut]
            del self.boundaries[0]
            for boundary in self.boundaries:
                boundary.display_index -= cut

    # -- undo --

    def _handle_undo(self) -> bool:
        if self.busy or not self.boundaries:
            return False

        boundary = self.boundaries.pop()
        self.total_input_tokens = boundary.input_tokens_at_start
        self.total_output_tokens = boundary.output_tokens_at_start
        self.turn_input_tokens = 0
        self.turn_output_tokens = 0
        del self.display[boundary.display_index:]
        del self.history[boundary.history_index:]
        self._clear_streaming()
        self.phase = TurnPhase.IDLE

        self.undo_in_flight = True
        self._spawn(self._undo_side_effects(boundary.durable_message_id), name="undo")
        return True

    async def _undo_side_effects(self, durable_message_id: int) -> None:
        restored: list[str] = []
        errors: list[str] = []

        if self._write_behind is not None:
            try:
                await self._write_behind.flush()
            except Exception as ex:
                logger.error(f"Undo: store queue flush failed: {type(ex).__name__}: {ex}")
                errors.append(f"flush: {ex}")

        # File restore is best-effort; the message delete below always runs.
        if self._delta_tracker is not None and durable_message_id > 0:
            try:
                restored = await asyncio.to_thread(self._delta_tracker.undo, self.session_id, durable_message_id)
            except DeltaRestoreError as ex:
                failed = {path for path, _ in ex.failures}
                restored = [p for p in ex.affected if p not in failed]
                errors.append(str(ex))
            except Exception as ex:
                logger.error(f"Undo: file restore failed: {type(ex).__name__}: {ex}")
                errors.append(f"file restore: {ex}")
            try:
                await asyncio.to_thread(self._delta_tracker.delete_turn, self.session_id, durable_message_id)
            except Exception as ex:
                logger.error(f"Undo: failed to delete file deltas: {type(ex).__name__}: {ex}")
                errors.append(f"delta cleanup: {ex}")

        if self._sessions is not None and durable_message_id > 0:
            try:
                await asyncio.to_thread(self._sessions.delete_messages_from, self.session_id, durable_message_id)
            except Exception as ex:
                logger.error(f"Undo: failed to delete messages: {type(ex).__name__}: {ex}")
                errors.append(f"message delete: {ex}")

        if self._read_tracker is not None:
            self._read_tracker.reset()

        if self._indexer is not None:
            for path in restored:
                try:
                    await asyncio.to_thread(self._indexer.update_file, path)
                except Exception as ex:
                    logger.warning(f"Undo: failed to re-index {path}: {ex}")

        self._post(_UndoFinished(restored, "; ".join(errors) or None))

    def _handle_undo_finished(self, result: _UndoFinished) -> None:
        self.undo_in_flight = False
        if result.error:
            self.last_error = f"undo incomplete: {result.error}"
        self._observer.on_undo_finished(result.restored, result.error)

    def _notice(self, text: str) -> None:
        self.display.append(ConversationEntry(EntryKind.NOTICE, text))
        self._observer.on_notice(text)
