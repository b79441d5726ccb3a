from __future__ import annotations

import os
import threading


class FileReadTracker:
    """Remembers which files the model has read during the session.

    ``write_file`` refuses to overwrite a file the model has not seen. Undo
    resets the tracker so restored files must be re-read.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._read: set[str] = set()

    @staticmethod
    def _key(path: str) -> str:
        return os.path.normcase(os.path.abspath(path))

    def mark_read(self, path: str) -> None:
        with self._lock:
            self._read.add(self._key(path))

    def was_read(self, path: str) -> bool:
        with self._lock:
            return self._key(path) in self._read

    def reset(self) -> None:
        with self._lock:
            self._read.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._read)
