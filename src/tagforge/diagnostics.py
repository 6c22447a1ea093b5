import logging
import threading
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_ENTRIES = 1000


@dataclass(frozen=True, slots=True)
class LogEntry:
    message: str
    level: str = "INFO"
    timestamp: datetime = field(default_factory=datetime.now)


def describe_exception(exc: BaseException) -> str:
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()
    return f"Exception Type: {type(exc).__name__}\nMessage: {exc}\nStackTrace: {stack}"


class DiagnosticLog:
    """Bounded in-memory log kept separate from the conversation transcript."""

    def __init__(self, max_entries: int = MAX_ENTRIES):
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, message: str, level: str = "INFO") -> LogEntry:
        entry = LogEntry(message=message, level=level.upper())
        with self._lock:
            self._entries.append(entry)
        return entry

    def record_error(self, context: str, exc: BaseException) -> LogEntry:
        logger.error(f"{context} failed: {exc}", exc_info=(type(exc), exc, exc.__traceback__))
        return self.record(f"{context}: {describe_exception(exc)}", level="ERROR")

    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def handler(self, level: int = logging.WARNING) -> logging.Handler:
        return _DiagnosticHandler(self, level)


class _DiagnosticHandler(logging.Handler):
    def __init__(self, sink: DiagnosticLog, level: int):
        super().__init__(level)
        self._sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == logger.name:
            return  # record_error already stored it
        try:
            self._sink.record(f"{record.name}: {record.getMessage()}", record.levelname)
        except Exception:
            self.handleError(record)
