"""Logging configuration helpers.

:func:`setup_logging` is shared by ``signaling_server.py`` and
``live_call.py``.  It supports text and JSON output and silences the
chatty transport and media libraries underneath the call stack.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

# Attributes a caller may attach through ``extra=`` that are worth keeping
# in structured output.
_CONTEXT_FIELDS = ("room", "handle", "event", "state")

_NOISY_LOGGERS = {
    "websockets": logging.WARNING,
    "aiortc": logging.WARNING,
    "aioice": logging.WARNING,
    "libav": logging.ERROR,
    "asyncio": logging.ERROR,
}


class _JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False)


def setup_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Optional[str] = None,
    name: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger and return a logger.

    Parameters
    ----------
    level:
        Logging level name, e.g. ``"INFO"`` or ``"DEBUG"``.
    fmt:
        ``"text"`` or ``"json"`` output format.
    log_file:
        Optional path to a log file in addition to stderr.
    name:
        Logger name to return.  If omitted the root logger is returned.
    """

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter: logging.Formatter
    if fmt.lower() == "json":
        formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)s %(levelname)s - %(message)s", "%H:%M:%S"
        )

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for logger_name, logger_level in _NOISY_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(logger_level)

    return logging.getLogger(name) if name else root


__all__ = ["setup_logging"]
