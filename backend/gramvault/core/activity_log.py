"""
Activity Log - In-process log of user-relevant events.

Keeps the most recent entries for the control API and forwards every
record to structlog.
"""

import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog

logger = structlog.get_logger()


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogCategory(str, enum.Enum):
    NETWORK = "network"
    UPLOAD = "upload"
    ABUSE = "abuse"
    SESSION = "session"
    CODEC = "codec"


@dataclass
class LogEntry:
    level: LogLevel
    category: LogCategory
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ActivityLog:
    """Bounded ring of log entries. Recording never raises."""

    def __init__(self, max_entries: int = 500):
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)

    def record(self, level: LogLevel, category: LogCategory, message: str) -> None:
        entry = LogEntry(level=level, category=category, message=message)
        self._entries.append(entry)
        getattr(logger, level.value)(message, category=category.value)

    def info(self, category: LogCategory, message: str) -> None:
        self.record(LogLevel.INFO, category, message)

    def warning(self, category: LogCategory, message: str) -> None:
        self.record(LogLevel.WARNING, category, message)

    def error(self, category: LogCategory, message: str) -> None:
        self.record(LogLevel.ERROR, category, message)

    def entries(
        self,
        category: Optional[LogCategory] = None,
        limit: int = 100,
    ) -> list[LogEntry]:
        """Most recent entries first."""
        items = [e for e in reversed(self._entries) if category is None or e.category == category]
        return items[:limit]

    def clear(self) -> None:
        self._entries.clear()
