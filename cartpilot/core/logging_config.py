"""Cartpilot logging configuration.

Call ``configure_logging()`` once at process startup (the CLI does).  Every
other module logs through its own module-level logger::

    logger = logging.getLogger(__name__)

Each record carries the id of the checkout run that emitted it.  The
orchestrator worker enters :func:`task_log_context` around a run, and
:class:`TaskContextFilter` copies the id onto every record, so the lines of
concurrent runs can be told apart.

Environment fallbacks (read at call time):
    LOG_LEVEL   DEBUG | INFO | WARNING | ERROR | CRITICAL   (default: INFO)
    LOG_FORMAT  text | json                                 (default: text)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "TASK_ID_CTX",
    "TaskContextFilter",
    "task_log_context",
]

#: Id of the task whose checkout run is executing, ``"-"`` elsewhere
#: (admission loop, startup, tests).
TASK_ID_CTX: ContextVar[str] = ContextVar("task_id", default="-")

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS = ("text", "json")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(task_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries used by the webhook client and the store; chatty below WARNING.
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


@contextmanager
def task_log_context(task_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with *task_id*."""
    token = TASK_ID_CTX.set(task_id)
    try:
        yield
    finally:
        TASK_ID_CTX.reset(token)


class TaskContextFilter(logging.Filter):
    """Copy :data:`TASK_ID_CTX` onto each record as ``record.task_id``.

    Installed on the handler so it also covers records from third-party
    loggers.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.task_id = TASK_ID_CTX.get()
        return True


def _resolve(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    resolved = value or os.environ.get(env_var, default)
    resolved = resolved.upper() if env_var == "LOG_LEVEL" else resolved.lower()
    if resolved not in allowed:
        raise ValueError(f"Unknown {env_var} {resolved!r}. Must be one of: {', '.join(allowed)}")
    return resolved


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install the single stderr handler on the root logger.

    Args:
        level: Level name; falls back to ``$LOG_LEVEL``, then ``INFO``.
        fmt: ``text`` or ``json``; falls back to ``$LOG_FORMAT``, then ``text``.
        force: Replace handlers that are already installed.  Without it an
            existing setup (e.g. pytest's) only gets the new level.

    Raises:
        ValueError: If *level* or *fmt* is not recognised.
    """
    resolved_level = _resolve(level, "LOG_LEVEL", "INFO", _LEVELS)
    resolved_fmt = _resolve(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(TaskContextFilter())
    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT))

    root.handlers.clear()
    root.addHandler(handler)

    quiet_level = logging.NOTSET if resolved_level == "DEBUG" else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else was passed through ``extra``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "task_id", "event"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    ``task_id`` and ``event`` are promoted to top-level keys; ``event`` is
    ``null`` for records logged without one.  Remaining ``extra`` fields go
    under ``"extra"``::

        {"ts": "2026-10-17T09:30:00.125Z", "level": "INFO",
         "logger": "cartpilot.orchestrator.orchestrator", "task_id": "ps5-costco",
         "event": "TASK_SUCCEEDED", "message": "Task ps5-costco succeeded (order 77).",
         "extra": {}}
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "task_id": getattr(record, "task_id", TASK_ID_CTX.get()),
            "event": getattr(record, "event", None),
            "message": record.getMessage(),
            "extra": {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS},
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)
