"""Logging for cloud2scw.

All module loggers hang under the ``cloud2scw`` logger, which owns a single
RichHandler. Records emitted from data disk worker threads carry the thread
name so interleaved output can be told apart.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from rich.logging import RichHandler
from rich.errors import MarkupError
from rich.text import Text

ROOT_LOGGER = "cloud2scw"
FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


class _WorkerFormatter(logging.Formatter):
    """Prefix messages logged outside the main thread with the thread name."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.threadName != threading.main_thread().name:
            return f"[dim]{record.threadName}[/dim] {message}"
        return message


class _PlainFormatter(logging.Formatter):
    """Drop rich markup for file output."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        try:
            return Text.from_markup(message).plain
        except MarkupError:
            return message


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setFormatter(_WorkerFormatter("%(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger attached to the shared cloud2scw handler."""
    root = _root()
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return root.getChild(name)


def set_log_level(level: str) -> None:
    """Set log level (DEBUG, INFO, WARNING, ERROR)."""
    _root().setLevel(getattr(logging, level.upper(), logging.INFO))


def add_log_file(path: str | Path) -> logging.Handler:
    """Also write every record, without markup, to a file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(_PlainFormatter(FILE_FORMAT))
    _root().addHandler(handler)
    return handler
