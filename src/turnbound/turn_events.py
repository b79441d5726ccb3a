from __future__ import annotations

from dataclasses import dataclass

from turnbound.models import Message


class TurnEvent:
    """Base class for everything a turn worker sends to the consumer."""


@dataclass(frozen=True)
class ContentDelta(TurnEvent):
    text: str


@dataclass(frozen=True)
class ReasoningDelta(TurnEvent):
    text: str


@dataclass(frozen=True)
class UsageReport(TurnEvent):
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class HistoryMessage(TurnEvent):
    """A finalized history entry (assistant reply, tool result, injected user note)."""

    message: Message


class TerminalEvent(TurnEvent):
    """Last event of a turn. Exactly one is emitted per turn."""


@dataclass(frozen=True)
class TurnDone(TerminalEvent):
    duration_seconds: float
    started_at: float
    input_tokens: int
    output_tokens: int
    context_tokens: int


@dataclass(frozen=True)
class TurnFailed(TerminalEvent):
    error: BaseException


@dataclass(frozen=True)
class TurnCancelled(TerminalEvent):
    duration_seconds: float
