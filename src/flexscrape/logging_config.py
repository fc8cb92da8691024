"""Process-wide logging setup for the CLI and task runner.

Tasks run concurrently, so every record is tagged with the name of the task
whose coroutine emitted it (``-`` outside a task). The runner sets
``current_task`` at the start of each task; asyncio copies context per
coroutine, so the tag never leaks between tasks.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar

from flexscrape.settings import get_settings

current_task: ContextVar[str] = ContextVar("flexscrape_task", default="-")

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s [%(task)s] %(name)s — %(message)s"


class _TaskFilter(logging.Filter):
    """Stamp each record with the running task's name."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "task"):
            record.task = current_task.get()
        return True


_TASK_FILTER = _TaskFilter()


class _JsonFormatter(logging.Formatter):
    """One JSON object per record: severity, message, logger, task, time."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "severity": record.levelname if record.levelno else "DEFAULT",
            "message": record.getMessage(),
            "logger": record.name,
            "task": getattr(record, "task", current_task.get()),
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str | None = None) -> None:
    """Set up root logging.

    Outside the ``local`` environment (or with ``logging.json_format``
    enabled), emits JSON entries::

        {"severity": "INFO", "message": "...", "logger": "...", "task": "..."}

    Locally, uses a human-readable plain-text format.

    Args:
        level: Explicit level name; defaults to ``settings.logging.level``.
    """
    settings = get_settings()
    log_level = getattr(logging, (level or settings.logging.level).upper(), logging.INFO)

    if settings.env != "local" or settings.logging.json_format:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter())
        logging.root.handlers.clear()
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(level=log_level, format=PLAIN_FORMAT, datefmt="%H:%M:%S", stream=sys.stderr)
        logging.root.setLevel(log_level)

    for handler in logging.root.handlers:
        handler.addFilter(_TASK_FILTER)

    # Browser and HTTP client internals are noisy at INFO
    for name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)
