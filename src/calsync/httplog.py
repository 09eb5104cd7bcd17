from __future__ import annotations

from collections import deque
from datetime import datetime
import logging
from typing import Deque, List, Optional

logger = logging.getLogger("calsync.http")

MAX_RECENT = 100


class RecentLogHandler(logging.Handler):
    """Keeps the last ``capacity`` HTTP log lines in memory for display."""

    def __init__(self, capacity: int = MAX_RECENT) -> None:
        super().__init__(level=logging.DEBUG)
        self.lines: Deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        self.lines.append(f"[{stamp}] {record.getMessage()}")

    def recent(self, count: int) -> List[str]:
        return list(reversed(self.lines))[:count]


_handler: Optional[RecentLogHandler] = None


def install_recent_handler() -> RecentLogHandler:
    global _handler
    if _handler is None:
        _handler = RecentLogHandler()
        logger.addHandler(_handler)
        if logger.level == logging.NOTSET or logger.level > logging.DEBUG:
            logger.setLevel(logging.DEBUG)
    return _handler


def log_request(method: str, url: str) -> None:
    logger.debug("%s %s", method, url)


def log_response(status: int, url: str) -> None:
    logger.debug("<- %s %s", status, url)


def get_recent_logs(count: int = 20) -> List[str]:
    """Newest first."""
    if _handler is None:
        return []
    return _handler.recent(count)
