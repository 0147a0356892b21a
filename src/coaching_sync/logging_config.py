import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
    " - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    # stderr by default so log lines never interleave with the chat transcript on stdout.
    def __init__(self, stream: str = "stderr"):
        if stream not in ("stderr", "stdout"):
            raise ValueError(f"Unknown console stream: {stream!r}")
        self._stream = stream

    def register(self, level: str) -> None:
        sink = sys.stderr if self._stream == "stderr" else sys.stdout
        logger.add(sink, level=level, format=_CONSOLE_FORMAT)

    def describe(self, level: str) -> str:
        return f"console ({self._stream}, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "coaching_sync.log",
        rotation: str = "10 MB",
        retention: int = 3,
        compression: str | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._compression = compression

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            compression=self._compression,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


class MemoryLogConsumer:
    """Keeps formatted records in a list; used to inspect sync decisions."""

    def __init__(self, capacity: int = 1000):
        self._capacity = max(1, capacity)
        self.records: list[str] = []

    def _write(self, message) -> None:
        self.records.append(str(message).rstrip("\n"))
        if len(self.records) > self._capacity:
            del self.records[: len(self.records) - self._capacity]

    def register(self, level: str) -> None:
        logger.add(self._write, level=level, format="{level} | {message}")

    def describe(self, level: str) -> str:
        return f"memory ({self._capacity} records, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "memory": MemoryLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": ".coaching_sync/coaching_sync.log"},
]

_active_consumers: list[LogConsumer] = []


def memory_records() -> list[str] | None:
    """Records held by the configured memory consumer, or None when there is none."""
    for consumer in _active_consumers:
        if isinstance(consumer, MemoryLogConsumer):
            return list(consumer.records)
    return None


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Configure logging sinks. Returns a description of each registered consumer."""
    logger.remove()
    _active_consumers.clear()

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []

    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        _active_consumers.append(consumer)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
