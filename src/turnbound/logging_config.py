import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_FILE = ".turnbound/turnbound.log"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """stderr sink with a short format; stdout belongs to the REPL."""

    def register(self, level: str) -> int:
        return logger.add(
            sys.stderr,
            level=level,
            format="<level>{level:<8}</level> | <level>{message}</level>",
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(self, path: str = DEFAULT_LOG_FILE, rotation: str = "10 MB", retention: int = 3):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        # Turn, store and undo workers log from threads; enqueue serializes writes.
        return logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {thread.name} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": DEFAULT_LOG_FILE},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured consumers.

    Returns a description of each registered consumer. Unknown consumer types
    are skipped with a warning once the valid sinks are in place.
    """
    logger.remove()
    level = level.upper()

    descriptions: list[str] = []
    unknown: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            unknown.append(repr(sink_type))
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = str(config.get("level", level)).upper()
        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    for sink_type in unknown:
        logger.warning(f"Unknown log consumer type: {sink_type}")
    return descriptions
