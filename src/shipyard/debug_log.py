"""Debug logging with an in-memory ring buffer.

Python logging records from the ``shipyard`` logger tree are captured into a
bounded buffer so the CLI can export recent history after a failed run.
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from shipyard.limits import MAX_LOG_LINES, MAX_LOG_MESSAGE_LENGTH


@dataclass(slots=True)
class LogEntry:
    """A captured log entry."""

    group: str  # Level name (DEBUG, INFO, WARNING, ERROR, etc.)
    message: str
    timestamp: float
    logger: str


log_buffer: deque[LogEntry] = deque(maxlen=MAX_LOG_LINES)

_buffer_generation: int = 0


def _truncate(message: str) -> str:
    if len(message) > MAX_LOG_MESSAGE_LENGTH:
        return message[:MAX_LOG_MESSAGE_LENGTH] + "... [truncated]"
    return message


class DebugLogHandler(logging.Handler):
    """Logging handler that captures logs to the debug buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = _truncate(self.format(record))
            log_buffer.append(
                LogEntry(
                    group=record.levelname,
                    message=msg,
                    timestamp=record.created,
                    logger=record.name,
                )
            )
        except Exception:
            self.handleError(record)


_logging_initialized: bool = False


def setup_logging(*, verbose: bool = False) -> None:
    """Attach the ring-buffer and stderr handlers to the ``shipyard`` logger.

    This is idempotent - calling it multiple times only adjusts the level.
    """
    global _logging_initialized

    package_logger = logging.getLogger("shipyard")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if _logging_initialized:
        return

    buffer_handler = DebugLogHandler()
    buffer_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    package_logger.addHandler(buffer_handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    package_logger.addHandler(stream_handler)

    _logging_initialized = True
    package_logger.debug("Logging initialized")


def clear_log_buffer() -> None:
    """Clear the log buffer."""
    global _buffer_generation
    log_buffer.clear()
    _buffer_generation += 1


def get_buffer_generation() -> int:
    """Get the current buffer generation (incremented on clear)."""
    return _buffer_generation


def export_logs_to_file(file_path: str | Path) -> int:
    """Export all logs from the buffer to a file.

    Args:
        file_path: Path to write the log file to

    Returns:
        Number of log entries written
    """
    output_path = Path(file_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        f.write("# Shipyard Debug Log Export\n")
        f.write(f"# Total entries: {len(log_buffer)}\n")
        f.write(f"# Buffer generation: {_buffer_generation}\n")
        f.write("# " + "=" * 76 + "\n\n")

        for entry in log_buffer:
            ts = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
            f.write(f"{ts} [{entry.group}] {entry.message}\n")

    return len(log_buffer)
