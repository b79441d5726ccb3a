import asyncio
from pathlib import Path
from typing import Any

from turnbound.file_tracker import FileReadTracker


class WriteFileTool:
    def __init__(self, working_directory: str | None = None, tracker: FileReadTracker | None = None):
        self._working_directory = working_directory
        self._tracker = tracker

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write content to a file, creating it if it doesn't exist. "
            "An existing file must be read with read_file first."
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
                "content": {
                    "type": "string",
                    "description": "The content to write to the file",
                },
            },
            "required": ["path", "content"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        path = tool_input["path"]
        content = tool_input["content"]
        file_path = Path(path)
        if not file_path.is_absolute() and self._working_directory:
            file_path = Path(self._working_directory) / file_path

        if self._tracker is not None and file_path.exists() and not self._tracker.was_read(str(file_path)):
            return f"Error: {path} exists and has not been read. Read it with read_file before overwriting."

        try:
            await asyncio.to_thread(self._write, file_path, content)
        except Exception as ex:
            return f"Error writing file: {ex}"
        if self._tracker is not None:
            self._tracker.mark_read(str(file_path))
        return f"Successfully wrote to {path}"

    @staticmethod
    def _write(file_path: Path, content: str) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
