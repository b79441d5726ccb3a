from __future__ import annotations

import os
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from turnbound.memory.store import MemoryStore
from turnbound.models import unix_now

MAX_SNAPSHOT_FILE_SIZE = 1 << 20

SKIP_DIRS = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "vendor", ".cache", ".next", "dist", "build", "target"}
)


@dataclass(frozen=True)
class FileSnapshot:
    mtime_ns: int
    size: int
    content: bytes | None  # None for files above MAX_SNAPSHOT_FILE_SIZE


class DeltaRestoreError(Exception):
    def __init__(self, failures: list[tuple[str, str]], affected: list[str]):
        self.failures = failures
        self.affected = affected
        detail = "; ".join(f"{path}: {reason}" for path, reason in failures)
        super().__init__(f"failed to restore {len(failures)} file(s): {detail}")


def snapshot_dir(root: str | Path) -> dict[str, FileSnapshot]:
    """Walk ``root`` and capture mtime, size and (for small files) content per relative path."""
    root_path = Path(root)
    snapshot: dict[str, FileSnapshot] = {}
    for dirpath, dirnames, filenames in os.walk(root_path, onerror=lambda _: None):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        for filename in filenames:
            path = Path(dirpath) / filename
            try:
                stat = path.stat()
                content = path.read_bytes() if stat.st_size <= MAX_SNAPSHOT_FILE_SIZE else None
            except OSError:
                continue
            rel = str(path.relative_to(root_path))
            snapshot[rel] = FileSnapshot(mtime_ns=stat.st_mtime_ns, size=stat.st_size, content=content)
    return snapshot


class DeltaTracker:
    """Records filesystem changes per (session, turn) so a turn can be reversed.

    The turn id is the durable row id of the user message that started it.
    Only the first pre-image of a file per turn is kept.
    """

    def __init__(self, store: MemoryStore, *, session_id: str | None = None):
        self._store = store
        self._lock = threading.Lock()
        self._session_id = session_id or ""
        self._turn_id = 0

    def set_session(self, session_id: str) -> None:
        with self._lock:
            self._session_id = session_id

    def begin_turn(self, turn_id: int) -> None:
        with self._lock:
            self._turn_id = turn_id

    @property
    def turn_id(self) -> int:
        with self._lock:
            return self._turn_id

    def snapshot_dir(self, root: str | Path) -> dict[str, FileSnapshot]:
        return snapshot_dir(root)

    def record_deltas(
        self,
        root: str | Path,
        before: dict[str, FileSnapshot],
        after: dict[str, FileSnapshot],
    ) -> None:
        root_path = Path(root)
        for rel, post in after.items():
            abs_path = str(root_path / rel)
            pre = before.get(rel)
            if pre is None:
                self.record_create(abs_path)
            elif pre.mtime_ns != post.mtime_ns or pre.size != post.size:
                self.record_modify(abs_path, pre.content)
        for rel, pre in before.items():
            if rel not in after:
                self.record_modify(str(root_path / rel), pre.content)

    def record_modify(self, file_path: str, old_content: bytes | None) -> None:
        if old_content is None:
            logger.warning(f"Not tracking change to {file_path}: file too large to snapshot")
            return
        with self._lock:
            if not self._turn_id or not self._session_id:
                return
            try:
                existing = self._store.fetchone(
                    "SELECT 1 FROM file_deltas WHERE session_id = ? AND turn_id = ? AND file_path = ? LIMIT 1",
                    (self._session_id, self._turn_id, file_path),
                )
                if existing is not None:
                    return
                self._store.execute(
                    """
                    INSERT INTO file_deltas (session_id, turn_id, file_path, op, old_content, created)
                    VALUES (?, ?, ?, 'modify', ?, ?)
                    """,
                    (self._session_id, self._turn_id, file_path, old_content, unix_now()),
                )
            except sqlite3.Error as ex:
                logger.warning(f"Failed to record modify delta for {file_path}: {ex}")

    def record_create(self, file_path: str) -> None:
        with self._lock:
            if not self._turn_id or not self._session_id:
                return
            try:
                self._store.execute(
                    """
                    INSERT INTO file_deltas (session_id, turn_id, file_path, op, old_content, created)
                    VALUES (?, ?, ?, 'create', NULL, ?)
                    """,
                    (self._session_id, self._turn_id, file_path, unix_now()),
                )
            except sqlite3.Error as ex:
                logger.warning(f"Failed to record create delta for {file_path}: {ex}")

    def undo(self, session_id: str, turn_id: int) -> list[str]:
        """Reverse a turn's file changes, newest first.

        Returns every affected path. If any file could not be restored a
        :class:`DeltaRestoreError` is raised after all others were processed;
        it carries the affected paths as well.
        """
        rows = self._store.fetchall(
            """
            SELECT file_path, op, old_content
            FROM file_deltas
            WHERE session_id = ? AND turn_id = ?
            ORDER BY id DESC
            """,
            (session_id, turn_id),
        )

        affected: list[str] = []
        failures: list[tuple[str, str]] = []
        for row in rows:
            path = Path(str(row["file_path"]))
            affected.append(str(path))
            try:
                if row["op"] == "modify":
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(bytes(row["old_content"] or b""))
                elif path.exists():
                    path.unlink()
            except OSError as ex:
                logger.warning(f"Undo: failed to restore {path}: {ex}")
                failures.append((str(path), str(ex)))

        logger.info(f"Undo restored {len(affected) - len(failures)} of {len(affected)} file(s) for turn {turn_id}")
        if failures:
            raise DeltaRestoreError(failures, affected)
        return affected

    def delete_turn(self, session_id: str, turn_id: int) -> None:
        try:
            self._store.execute(
                "DELETE FROM file_deltas WHERE session_id = ? AND turn_id = ?",
                (session_id, turn_id),
            )
        except sqlite3.Error as ex:
            logger.warning(f"Failed to delete deltas for turn {turn_id}: {ex}")
