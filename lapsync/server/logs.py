"""In-memory ring buffer of recent server log lines, served over HTTP."""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any


class LogBuffer(logging.Handler):
    """Logging handler keeping the last ``capacity`` formatted records."""

    def __init__(self, capacity: int = 100, level: int = logging.INFO):
        super().__init__(level=level)
        self.capacity = capacity
        self._entries: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "component": record.name,
                "message": record.getMessage(),
            }
        except Exception:
            self.handleError(record)
            return

        with self._entries_lock:
            self._entries.append(entry)

    def entries(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Get buffered entries, oldest first."""
        with self._entries_lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear(self) -> int:
        """Drop every buffered entry. Returns how many were dropped."""
        with self._entries_lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)


def install_log_buffer(capacity: int = 100, level: int = logging.INFO) -> LogBuffer:
    """Attach a LogBuffer to the root logger, reusing one already attached."""
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, LogBuffer):
            return handler

    buffer = LogBuffer(capacity=capacity, level=level)
    root.addHandler(buffer)
    return buffer
