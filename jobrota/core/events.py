"""Structured log event name constants for the Jobrota scheduler.

Every state transition emits a log record with an ``event`` field (passed
via ``extra={"event": events.X}``) and, when an
:class:`~jobrota.storage.activity.ActivityLog` is wired in, a row in the
``activity_log`` table with the same name.

Usage example::

    import logging
    from jobrota.core import events

    logger = logging.getLogger(__name__)

    logger.info("Entry assigned", extra={"event": events.ENTRY_ASSIGNED})

In text mode the ``event`` value is not interpolated into the log line; in
JSON mode it surfaces as ``extra.event``.
"""

from __future__ import annotations

__all__ = [
    # Tick lifecycle
    "TICK_START",
    "TICK_COMPLETE",
    "TICK_ERROR",
    "ENTRIES_REQUEUED_STALE",
    # Job lifecycle
    "JOB_CREATED",
    "JOB_STARTED",
    "JOB_PAUSED",
    "JOB_RESUMED",
    "JOB_CANCELLED",
    "JOB_COMPLETED",
    "JOB_FAILED",
    # Entry lifecycle
    "ENTRY_ENQUEUED",
    "ENTRY_ASSIGNED",
    "ENTRY_DEFERRED",
    "ENTRY_PROCESSING",
    "ENTRY_COMPLETED",
    "ENTRY_RETRIED",
    "ENTRY_FAILED",
    "ENTRY_TIMEOUT",
    # Account lifecycle
    "ACCOUNT_COOLDOWN",
    "ACCOUNT_BLOCKED",
    "ACCOUNT_RECOVERED",
    # Credits
    "CREDITS_RESERVED",
    "CREDITS_RELEASED",
]

# ---------------------------------------------------------------------------
# Tick lifecycle
# ---------------------------------------------------------------------------

#: Emitted at the start of every scheduler tick.
TICK_START: str = "TICK_START"

#: Emitted when a tick finishes, with dispatch counters.
TICK_COMPLETE: str = "TICK_COMPLETE"

#: A tick raised unexpectedly; the loop continues with the next tick.
TICK_ERROR: str = "TICK_ERROR"

#: Orphaned assigned/processing entries were returned to the queue.
ENTRIES_REQUEUED_STALE: str = "ENTRIES_REQUEUED_STALE"

# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------

JOB_CREATED: str = "JOB_CREATED"
JOB_STARTED: str = "JOB_STARTED"
JOB_PAUSED: str = "JOB_PAUSED"
JOB_RESUMED: str = "JOB_RESUMED"
JOB_CANCELLED: str = "JOB_CANCELLED"

#: Every entry is terminal and at least one succeeded.
JOB_COMPLETED: str = "JOB_COMPLETED"

#: Every entry is terminal and none succeeded.
JOB_FAILED: str = "JOB_FAILED"

# ---------------------------------------------------------------------------
# Entry lifecycle
# ---------------------------------------------------------------------------

ENTRY_ENQUEUED: str = "ENTRY_ENQUEUED"

#: ``queued -> assigned`` through the atomic claim.
ENTRY_ASSIGNED: str = "ENTRY_ASSIGNED"

#: A claimed entry had no usable account and went back to the queue.
ENTRY_DEFERRED: str = "ENTRY_DEFERRED"

#: ``assigned -> processing``; the execution task has been spawned.
ENTRY_PROCESSING: str = "ENTRY_PROCESSING"

ENTRY_COMPLETED: str = "ENTRY_COMPLETED"

#: A failed attempt was requeued with ``retry_count + 1``.
ENTRY_RETRIED: str = "ENTRY_RETRIED"

#: Retries exhausted or permanent error; the entry is archived as failed.
ENTRY_FAILED: str = "ENTRY_FAILED"

#: The execution exceeded the hard timeout and its slot was reclaimed.
ENTRY_TIMEOUT: str = "ENTRY_TIMEOUT"

# ---------------------------------------------------------------------------
# Account lifecycle
# ---------------------------------------------------------------------------

ACCOUNT_COOLDOWN: str = "ACCOUNT_COOLDOWN"
ACCOUNT_BLOCKED: str = "ACCOUNT_BLOCKED"

#: A success returned a cooling-down or blocked account to normal.
ACCOUNT_RECOVERED: str = "ACCOUNT_RECOVERED"

# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------

CREDITS_RESERVED: str = "CREDITS_RESERVED"
CREDITS_RELEASED: str = "CREDITS_RELEASED"
