"""Process-wide logging setup for Jobrota.

:func:`configure_logging` is called once by the CLI before anything else
runs.  Library modules never configure handlers; they only do::

    logger = logging.getLogger(__name__)

and attach a lifecycle name from :mod:`jobrota.core.events` where one
applies::

    logger.info("Entry %s completed", entry_id, extra={"event": events.ENTRY_COMPLETED})

Two output formats are supported:

* ``text`` — ``2026-03-02 12:00:00 INFO     [3fa9c2d1] jobrota.storage.queue: ...``
  where the bracketed token is the scheduler tick id (``-`` outside a tick).
* ``json`` — one object per line (see :class:`JsonFormatter`), meant for
  log shippers.

``LOG_LEVEL`` / ``LOG_FORMAT`` are read from the environment when the
arguments are omitted.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Final

__all__ = ["configure_logging", "JsonFormatter", "TICK_ID_CTX", "TickContextFilter"]

#: Id of the scheduler tick currently running.  Set by
#: :meth:`~jobrota.orchestrator.scheduler.SchedulerLoop.tick`; worker tasks
#: created during a tick copy the context, so an execution's completion
#: records carry the id of the tick that dispatched it.
TICK_ID_CTX: ContextVar[str] = ContextVar("tick_id", default="-")

_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS: Final[tuple[str, ...]] = ("text", "json")

_TEXT_FORMAT: Final[str] = "%(asctime)s %(levelname)-8s [%(tick_id)s] %(name)s: %(message)s"
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

#: Third-party loggers that are only useful when debugging.
_CHATTY_LOGGERS: Final[tuple[str, ...]] = ("aiosqlite", "asyncio", "httpcore", "httpx")

#: Attributes every ``LogRecord`` carries; anything else was passed via ``extra``.
_STANDARD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


class TickContextFilter(logging.Filter):
    """Stamp ``record.tick_id`` from :data:`TICK_ID_CTX`.

    Installed on the handler by :func:`configure_logging` so both formatters
    can rely on the attribute being present.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.tick_id = TICK_ID_CTX.get("-")
        return True


def _pick(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    resolved = value or os.environ.get(env_var, default)
    resolved = resolved.upper() if env_var == "LOG_LEVEL" else resolved.lower()
    if resolved not in allowed:
        raise ValueError(
            f"Unknown {env_var} {resolved!r}. Must be one of: {', '.join(allowed)}"
        )
    return resolved


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (case-insensitive).
            Defaults to ``$LOG_LEVEL``, then INFO.
        fmt: ``text`` or ``json``.  Defaults to ``$LOG_FORMAT``, then text.
        force: Replace existing root handlers.  Without it, an already
            configured root logger (pytest, an embedding application) only
            has its level adjusted.

    Raises:
        ValueError: On an unknown level or format.
    """
    resolved_level = _pick(level, "LOG_LEVEL", "INFO", _LEVELS)
    resolved_fmt = _pick(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(TickContextFilter())
    handler.setFormatter(
        JsonFormatter()
        if resolved_fmt == "json"
        else logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT)
    )
    root.handlers.clear()
    root.addHandler(handler)

    chatty_level = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON line.

    Shape::

        {
            "ts": "2026-03-02T12:00:00.123Z",
            "level": "INFO",
            "logger": "jobrota.orchestrator.worker_pool",
            "message": "Entry 9c1e... completed",
            "tick_id": "3fa9c2d1",
            "event": "ENTRY_COMPLETED",
            "extra": {"entry_id": "9c1e...", "account_id": "acc-1"}
        }

    ``event`` is omitted when the call site did not set one.  ``extra``
    holds every other ``extra=`` field whose value is not ``None`` (the
    activity log passes all four correlation ids and most are usually
    unset).  ``exc_info`` / ``stack_info`` are added when present.
    Values that are not JSON-native are rendered with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "tick_id": getattr(record, "tick_id", TICK_ID_CTX.get("-")),
        }
        event = getattr(record, "event", None)
        if event is not None:
            payload["event"] = event

        payload["extra"] = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
            and key not in ("tick_id", "event")
            and value is not None
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)
