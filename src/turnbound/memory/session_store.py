from __future__ import annotations

import sqlite3
from uuid import uuid4

from loguru import logger

from turnbound.memory.store import MemoryStore
from turnbound.models import (
    Message,
    Session,
    StoredMessage,
    decode_tool_calls,
    encode_tool_calls,
    unix_now,
)

_INSERT_MESSAGE = """
    INSERT INTO messages (
        session_id, role, content, reasoning, tool_calls, tool_call_id,
        created, input_tokens, output_tokens
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_MESSAGE_COLUMNS = """
    SELECT id, role, content, reasoning, tool_calls, tool_call_id,
           created, input_tokens, output_tokens
    FROM messages
"""


def _message_params(session_id: str, message: Message) -> tuple:
    return (
        session_id,
        message.role,
        message.content,
        message.reasoning,
        encode_tool_calls(message.tool_calls),
        message.tool_call_id,
        int(message.created_at),
        int(message.input_tokens),
        int(message.output_tokens),
    )


def _row_to_stored(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=int(row["id"]),
        message=Message(
            role=str(row["role"]),
            content=row["content"] or "",
            reasoning=row["reasoning"] or "",
            tool_calls=decode_tool_calls(row["tool_calls"]),
            tool_call_id=row["tool_call_id"] or "",
            created_at=int(row["created"]),
            input_tokens=int(row["input_tokens"]),
            output_tokens=int(row["output_tokens"]),
        ),
    )


class SessionStore:
    """Durable conversation history keyed by session id.

    Row ids from the ``messages`` table are the authoritative ordering and
    the undo anchor. Writes go through the store's busy-retry policy.
    """

    def __init__(self, store: MemoryStore):
        self._store = store

    def create_session(self, session_id: str | None = None, *, title: str = "") -> str:
        sid = session_id or str(uuid4())
        now = unix_now()
        self._store.busy_retry.call(
            self._store.execute,
            "INSERT INTO sessions (id, title, created, updated) VALUES (?, ?, ?, ?)",
            (sid, title.strip(), now, now),
        )
        logger.info(f"Created session {sid}")
        return sid

    def get_session(self, session_id: str) -> Session | None:
        row = self._store.fetchone(
            "SELECT id, title, created, updated FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        )
        if row is None:
            return None
        return Session(id=row["id"], title=row["title"], created=int(row["created"]), updated=int(row["updated"]))

    def session_exists(self, session_id: str) -> bool:
        return self.get_session(session_id) is not None

    def load_or_create(self, session_id: str) -> str:
        if self.session_exists(session_id):
            return session_id
        return self.create_session(session_id)

    def set_session_title(self, session_id: str, title: str) -> None:
        cursor = self._store.busy_retry.call(
            self._store.execute,
            "UPDATE sessions SET title = ?, updated = ? WHERE id = ?",
            (title.strip(), unix_now(), session_id),
        )
        if cursor.rowcount == 0:
            raise ValueError(f"Session does not exist: {session_id}")

    def list_sessions(self, *, limit: int = 20) -> list[Session]:
        rows = self._store.fetchall(
            """
            SELECT id, title, created, updated
            FROM sessions
            ORDER BY updated DESC, created DESC
            LIMIT ?
            """,
            (max(1, limit),),
        )
        return [
            Session(id=row["id"], title=row["title"], created=int(row["created"]), updated=int(row["updated"]))
            for row in rows
        ]

    def latest_session_id(self) -> str | None:
        row = self._store.fetchone(
            """
            SELECT s.id
            FROM sessions s
            JOIN messages m ON m.session_id = s.id
            WHERE m.role = 'user'
            ORDER BY m.id DESC
            LIMIT 1
            """
        )
        return None if row is None else str(row["id"])

    def save_message_sync(self, session_id: str, message: Message) -> int:
        """Persist one message and return its row id.

        Used for the user message that starts a turn, since the id seeds the
        turn's undo linkage.
        """
        return self._store.busy_retry.call(self._save_message_once, session_id, message)

    def save_messages(self, session_id: str, messages: list[Message] | tuple[Message, ...]) -> None:
        """Append a batch atomically: every row and the ``updated`` bump, or nothing."""
        if not messages:
            return
        self._store.busy_retry.call(self._save_messages_once, session_id, list(messages))

    def load_messages(self, session_id: str) -> list[StoredMessage]:
        rows = self._store.fetchall(
            _SELECT_MESSAGE_COLUMNS + " WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        )
        return [_row_to_stored(row) for row in rows]

    def load_last_message(self, session_id: str) -> StoredMessage | None:
        row = self._store.fetchone(
            _SELECT_MESSAGE_COLUMNS + " WHERE session_id = ? ORDER BY id DESC LIMIT 1",
            (session_id,),
        )
        return None if row is None else _row_to_stored(row)

    def delete_messages_from(self, session_id: str, min_id: int) -> int:
        cursor = self._store.busy_retry.call(
            self._store.execute,
            "DELETE FROM messages WHERE session_id = ? AND id >= ?",
            (session_id, min_id),
        )
        logger.info(f"Deleted {cursor.rowcount} message(s) from session {session_id} starting at id {min_id}")
        return cursor.rowcount

    def _save_message_once(self, session_id: str, message: Message) -> int:
        with self._store.transaction() as conn:
            cursor = conn.execute(_INSERT_MESSAGE, _message_params(session_id, message))
            conn.execute("UPDATE sessions SET updated = ? WHERE id = ?", (unix_now(), session_id))
            return int(cursor.lastrowid)

    def _save_messages_once(self, session_id: str, messages: list[Message]) -> None:
        with self._store.transaction() as conn:
            for message in messages:
                conn.execute(_INSERT_MESSAGE, _message_params(session_id, message))
            conn.execute("UPDATE sessions SET updated = ? WHERE id = ?", (unix_now(), session_id))
