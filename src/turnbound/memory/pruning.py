from __future__ import annotations

from loguru import logger

from turnbound.memory.store import MemoryStore
from turnbound.models import unix_now

_SECONDS_PER_DAY = 24 * 60 * 60


def prune_sessions(
    store: MemoryStore,
    *,
    max_sessions: int,
    retention_days: int,
    keep_session_id: str | None = None,
) -> int:
    """Delete sessions (with their messages and file deltas) past retention or beyond ``max_sessions``."""
    cutoff = unix_now() - max(1, retention_days) * _SECONDS_PER_DAY
    keep = keep_session_id or ""

    expired = store.fetchall(
        "SELECT id FROM sessions WHERE updated < ? AND id != ?",
        (cutoff, keep),
    )
    doomed = {str(row["id"]) for row in expired}

    if max_sessions > 0:
        overflow = store.fetchall(
            """
            SELECT id
            FROM sessions
            WHERE id != ?
            ORDER BY updated DESC
            LIMIT -1 OFFSET ?
            """,
            (keep, max(0, max_sessions - (1 if keep else 0))),
        )
        doomed.update(str(row["id"]) for row in overflow)

    if not doomed:
        return 0

    with store.transaction() as conn:
        params = [(sid,) for sid in sorted(doomed)]
        conn.executemany("DELETE FROM messages WHERE session_id = ?", params)
        conn.executemany("DELETE FROM file_deltas WHERE session_id = ?", params)
        conn.executemany("DELETE FROM sessions WHERE id = ?", params)

    logger.info(f"Pruned {len(doomed)} session(s)")
    return len(doomed)
