"""
Logging setup for netpulse.

- console output through Rich (shares the dashboard console, so log lines
  are drawn above the live view instead of tearing it)
- optional structured (JSON lines) file output via --log-file
"""
from __future__ import annotations

import json
import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ENV_LEVEL = "NETPULSE_LOG_LEVEL"
DEFAULT_LEVEL = "WARNING"


class JSONFormatter(logging.Formatter):
    """
    Formatter that serializes log records to JSON.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level":     record.levelname,
            "logger":    record.name,
            "message":   record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def resolve_level(level: Optional[str] = None) -> int:
    """Explicit level, else $NETPULSE_LOG_LEVEL, else WARNING. Unknown names fall back to WARNING."""
    name = (level or os.environ.get(ENV_LEVEL) or DEFAULT_LEVEL).upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.WARNING


def configure_logging(level: Optional[str] = None,
                      log_file: Optional[str] = None,
                      console: Optional[Console] = None) -> int:
    """
    Configure the root logger once for the process.

    Parameters
    ----------
    level
        Level name; see resolve_level().
    log_file
        When given, also append JSON-lines records to this path.
    console
        Rich console to log through; pass the dashboard's console.

    Returns
    -------
    int
        The effective level.
    """
    lvl = resolve_level(level)
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(lvl)

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(lvl)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(lvl)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    logging.getLogger(__name__).debug("Logging configured: level=%s", logging.getLevelName(lvl))
    return lvl
