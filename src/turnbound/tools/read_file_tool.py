import asyncio
from pathlib import Path
from typing import Any

from turnbound.file_tracker import FileReadTracker

_MAX_READ_BYTES = 1 << 20


class ReadFileTool:
    def __init__(self, working_directory: str | None = None, tracker: FileReadTracker | None = None):
        self._working_directory = working_directory
        self._tracker = tracker

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read the contents of a text file. A file must be read before "
            "write_file is allowed to overwrite it."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute path, or a path relative to the working directory",
                },
            },
            "required": ["path"],
        }

    def resolve(self, path: str) -> Path:
        file_path = Path(path)
        if not file_path.is_absolute() and self._working_directory:
            file_path = Path(self._working_directory) / file_path
        return file_path

    async def execute(self, tool_input: dict[str, Any]) -> str:
        file_path = self.resolve(tool_input["path"])
        try:
            text = await asyncio.to_thread(self._read, file_path)
        except Exception as ex:
            return f"Error reading file: {ex}"
        if self._tracker is not None:
            self._tracker.mark_read(str(file_path))
        return text

    @staticmethod
    def _read(file_path: Path) -> str:
        size = file_path.stat().st_size
        if size > _MAX_READ_BYTES:
            raise ValueError(f"file is too large ({size:,} bytes, max {_MAX_READ_BYTES:,})")
        return file_path.read_text(encoding="utf-8")
