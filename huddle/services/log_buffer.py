"""
huddle.services.log_buffer — Recent log records for the admin console
======================================================================

A bounded in-memory ring of formatted log records, fed by a logging
handler attached to the root logger.  The admin API tails it and can
raise or lower the capture level at runtime.  Nothing is persisted; a
restart starts with an empty buffer.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

DEFAULT_CAPACITY = 2000
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_buffer: LogBuffer | None = None
_lock = threading.Lock()


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    level: str
    logger: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class LogBuffer:
    """Thread-safe bounded deque of :class:`LogEntry`."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def tail(
        self,
        count: int = 200,
        *,
        min_level: str | None = None,
        logger_prefix: str | None = None,
    ) -> list[dict[str, str]]:
        """Newest *count* entries (oldest first) passing the filters."""
        threshold = logging.getLevelName(min_level.upper()) if min_level else 0
        if not isinstance(threshold, int):
            threshold = 0
        with self._lock:
            snapshot = list(self._entries)
        matched = [
            e.to_dict()
            for e in snapshot
            if logging.getLevelName(e.level) >= threshold
            and (not logger_prefix or e.logger.startswith(logger_prefix))
        ]
        return matched[-count:] if count else matched

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class BufferHandler(logging.Handler):
    """Copies each record into a :class:`LogBuffer`."""

    def __init__(self, buffer: LogBuffer, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(LogEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                logger=record.name,
                message=self.format(record),
            ))
        except Exception:
            self.handleError(record)


def get_buffer() -> LogBuffer:
    global _buffer
    with _lock:
        if _buffer is None:
            _buffer = LogBuffer()
        return _buffer


def _installed_handler() -> BufferHandler | None:
    for handler in logging.getLogger().handlers:
        if isinstance(handler, BufferHandler):
            return handler
    return None


def install_handler(level: int = logging.INFO) -> BufferHandler:
    """Attach the buffer handler to the root logger (once per process).

    Uvicorn's loggers are switched to propagate so request logs land in
    the buffer too.
    """
    handler = _installed_handler()
    if handler is not None:
        handler.setLevel(level)
        return handler
    handler = BufferHandler(get_buffer(), level=level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).propagate = True
    return handler


def get_logs(
    tail: int = 200,
    level: str | None = None,
    logger_filter: str | None = None,
) -> list[dict[str, str]]:
    return get_buffer().tail(tail, min_level=level, logger_prefix=logger_filter)


def get_capture_level() -> str:
    handler = _installed_handler()
    if handler is None:
        return logging.getLevelName(logging.getLogger().level)
    return logging.getLevelName(handler.level)


def set_capture_level(level_name: str) -> str:
    """Change what the buffer captures; installs the handler if needed.

    Raises ``ValueError`` for names outside :data:`VALID_LEVELS`.
    """
    name = (level_name or "").upper()
    if name not in VALID_LEVELS:
        raise ValueError(f"Invalid level: {level_name}. Must be one of {', '.join(VALID_LEVELS)}")
    install_handler(getattr(logging, name))
    return name
