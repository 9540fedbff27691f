"""
Shared helpers for loopctl: clocks, timestamp parsing, elapsed-time
rendering and logging configuration.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from loopctl.config import LoopctlConfig

# Record attributes copied into JSON log lines when a caller passes them via ``extra=``
CONTEXT_FIELDS = ("execution_id", "phase", "skill_id", "gate_id", "collaborator_id", "event")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by a ``to_dict``; empty values give None."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def format_elapsed(started: datetime, finished: Optional[datetime] = None) -> str:
    """
    Render the time between two instants as "1h 4m", "3m 20s" or "12s".

    Zero-valued units in the middle are dropped; seconds are only shown
    under an hour. A missing ``finished`` means now.
    """
    total = max(0, int(((finished or utcnow()) - started).total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)

    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    if minutes:
        return f"{minutes}m {seconds}s" if seconds else f"{minutes}m"
    return f"{seconds}s"


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record, carrying execution context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(config: "LoopctlConfig", console_output: bool = True) -> logging.Logger:
    """
    Configure the ``loopctl`` logger from the loaded config.

    ``log_format`` "pretty" logs to stderr through rich; "structured" writes
    JSON lines. A ``log_file``, when set, always receives JSON lines.
    Calling this again replaces the handlers installed by the previous call.
    """
    logger = logging.getLogger("loopctl")
    logger.setLevel(config.log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if config.log_file:
        log_file = Path(config.log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JsonLinesFormatter())
        logger.addHandler(file_handler)

    if console_output:
        if config.log_format == "pretty":
            console_handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(JsonLinesFormatter())
        logger.addHandler(console_handler)

    return logger
