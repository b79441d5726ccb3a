from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_undo: Callable[[], Awaitable[None]],
        on_sessions: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_undo = on_undo
        self._on_sessions = on_sessions
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        """Dispatch a slash command. Returns False for ordinary chat input."""
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed == "/undo":
            await self._on_undo()
            return True
        if trimmed.startswith("/sessions"):
            await self._on_sessions(trimmed)
            return True

        self._on_unknown(trimmed)
        return True
