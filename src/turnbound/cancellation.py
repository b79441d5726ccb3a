from __future__ import annotations

import threading


class TurnCancelledError(Exception):
    """Raised at a safe point once a turn's cancel token has been set."""


class CancelToken:
    """Cooperative cancellation signal shared between the consumer and one turn.

    Thread-safe, so tools running in worker threads can observe it too.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError("turn cancelled")
