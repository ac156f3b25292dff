"""Per-tick and lifetime scheduler statistics.

Tracks what every scheduler tick did and accumulates lifetime totals, with
two output paths for operators:

1. **Log summary** — :meth:`SchedulerStats.format_summary` returns a
   human-readable string suitable for a single ``logger.info()`` call.
2. **Files** — :func:`write_stats_file` serialises
   :meth:`SchedulerStats.as_dict` to JSON and :func:`write_heartbeat` writes
   the current epoch time, both rewritten after *every* tick (success or
   failure).  A container health check can compare the heartbeat against
   the poll interval to spot a hung scheduler.

Write errors are logged at WARNING level and never propagated: a stats or
heartbeat failure must not stop the scheduler.

Typical usage::

    from jobrota.orchestrator.metrics import SchedulerStats, write_stats_file

    stats = SchedulerStats()
    stats.update(tick_stats)
    write_stats_file(stats, "/tmp/jobrota_stats.json")
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

__all__ = [
    "TickStats",
    "SchedulerStats",
    "write_stats_file",
    "write_heartbeat",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class TickStats:
    """What one scheduler tick did.

    Attributes:
        tick_id: Correlation id shared by every log record of the tick.
        requeued_stale: Orphaned entries returned to the queue.
        claimed: Entries claimed from the queue.
        dispatched: Entries handed to the worker pool.
        deferred: Claimed entries released because no account was usable.
        pool_full: ``True`` if the tick stopped because the pool was full.
        duration_s: Wall-clock duration of the tick.
    """

    tick_id: str
    requeued_stale: int = 0
    claimed: int = 0
    dispatched: int = 0
    deferred: int = 0
    pool_full: bool = False
    duration_s: float = 0.0

    def format_tick_report(self) -> str:
        """One-line summary for the ``TICK_COMPLETE`` log record."""
        return (
            f"tick {self.tick_id} — claimed={self.claimed} dispatched={self.dispatched} "
            f"deferred={self.deferred} stale={self.requeued_stale}"
            f"{' [pool full]' if self.pool_full else ''} ({self.duration_s:.3f}s)"
        )


@dataclass
class SchedulerStats:
    """Cumulative statistics across all ticks of one scheduler instance."""

    ticks_run: int = 0
    failed_ticks: int = 0
    total_claimed: int = 0
    total_dispatched: int = 0
    total_deferred: int = 0
    total_requeued_stale: int = 0

    _start_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _started_at: datetime = field(
        default_factory=lambda: datetime.now(UTC),
        repr=False,
    )
    _last_tick_at: datetime | None = field(default=None, repr=False)

    @property
    def uptime_s(self) -> float:
        """Seconds since this instance was created."""
        return time.monotonic() - self._start_monotonic

    def update(self, tick: TickStats) -> None:
        """Accumulate a completed tick into the lifetime totals."""
        self.ticks_run += 1
        self.total_claimed += tick.claimed
        self.total_dispatched += tick.dispatched
        self.total_deferred += tick.deferred
        self.total_requeued_stale += tick.requeued_stale
        self._last_tick_at = datetime.now(UTC)

    def record_failure(self) -> None:
        """Count a tick that raised before completing."""
        self.ticks_run += 1
        self.failed_ticks += 1
        self._last_tick_at = datetime.now(UTC)

    def format_summary(self) -> str:
        """Return a one-line lifetime summary, e.g.::

            lifetime stats — uptime: 0h14m22s | ticks=170 failed=0 claimed=52 dispatched=50 deferred=2 stale=0
        """
        hours, rem = divmod(int(self.uptime_s), 3600)
        minutes, seconds = divmod(rem, 60)
        return (
            f"lifetime stats — uptime: {hours}h{minutes:02d}m{seconds:02d}s | "
            f"ticks={self.ticks_run} failed={self.failed_ticks} "
            f"claimed={self.total_claimed} dispatched={self.total_dispatched} "
            f"deferred={self.total_deferred} stale={self.total_requeued_stale}"
        )

    def as_dict(self, executions: dict[str, int] | None = None) -> dict[str, object]:
        """Return a JSON-serialisable snapshot.

        Args:
            executions: Optional worker pool counters to embed under the
                ``"executions"`` key.
        """
        return {
            "started_at": self._started_at.isoformat(),
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "uptime_s": round(self.uptime_s, 1),
            "ticks_run": self.ticks_run,
            "failed_ticks": self.failed_ticks,
            "total_claimed": self.total_claimed,
            "total_dispatched": self.total_dispatched,
            "total_deferred": self.total_deferred,
            "total_requeued_stale": self.total_requeued_stale,
            "executions": dict(executions or {}),
        }


# ---------------------------------------------------------------------------
# File writers
# ---------------------------------------------------------------------------


def write_stats_file(
    stats: SchedulerStats,
    path: str,
    executions: dict[str, int] | None = None,
) -> None:
    """Write a JSON snapshot of *stats* to *path*.  Errors are logged only."""
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(stats.as_dict(executions), fh, indent=2)
    except OSError:
        logger.warning("Failed to write stats file '%s'.", path, exc_info=True)


def write_heartbeat(path: str) -> None:
    """Write the current epoch timestamp to *path*.  Errors are logged only."""
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)
