"""Event-driven scheduler loop.

The loop keeps the worker pool saturated.  It sleeps on a wake signal with
the poll interval as a fallback timeout, so new work is picked up as soon as
it is enqueued (or a slot frees up) without busy-polling an idle queue.

Each :meth:`SchedulerLoop.tick`:

1. Requeues orphaned entries (held longer than ``stale_after`` and not owned
   by this pool), which makes a crashed scheduler's work recoverable.
2. While the pool has a free slot, claims the next entry, resolves an
   account for it, moves a pending job to running, and submits the entry.
3. Releases entries that have no usable account with
   ``available_at = now + retry_after`` and defers the rest of that tenant's
   queued entries of the same job type, so the same entries are not claimed
   and released again on every tick.

A tick never awaits an execution.  Ticks are serialised by a lock, and every
log record emitted during a tick (and by the worker tasks it spawns) carries
the tick's correlation id.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Final

from jobrota.accounts.ledger import AccountLedger
from jobrota.accounts.selector import AccountSelector
from jobrota.core import events
from jobrota.core.clock import Clock, utc_now
from jobrota.core.exceptions import NoEligibleAccountError, SchedulerError
from jobrota.core.logging_config import TICK_ID_CTX
from jobrota.core.models import Account, Job, JobStatus, JobType, QueueEntry
from jobrota.orchestrator.metrics import (
    SchedulerStats,
    TickStats,
    write_heartbeat,
    write_stats_file,
)
from jobrota.orchestrator.worker_pool import WorkerPool
from jobrota.storage.activity import ActivityLog
from jobrota.storage.queue import QueueStore
from jobrota.storage.repository import AccountRepository, JobRepository

__all__ = ["SchedulerLoop"]

logger = logging.getLogger(__name__)

#: Shortest deferral applied when the selector reports an immediate retry.
_MIN_DEFERRAL: Final[timedelta] = timedelta(seconds=1)


class SchedulerLoop:
    """Claims queued entries and feeds them to the worker pool.

    Args:
        queue: The durable queue.
        jobs: Job repository (pending → running transition).
        accounts: Account repository (bound-account lookups).
        ledger: Eligibility checks for bound accounts.
        selector: Resolves tenant-pool entries.
        pool: Worker pool the entries are submitted to.
        clock: Source of "now".
        poll_interval: Fallback tick interval in seconds.
        stale_after: Held entries older than this are requeued.
        claim_limit: Maximum claims per tick.
        retry_horizon: Deferral used when no account will become usable on
            its own.
        activity: Activity log for deferrals and job starts.
        name: Prefix of the worker ids stamped on claimed entries.
        stats_path: Write a JSON stats snapshot here after every tick.
        heartbeat_path: Write a heartbeat timestamp here after every tick.
    """

    def __init__(
        self,
        queue: QueueStore,
        jobs: JobRepository,
        accounts: AccountRepository,
        ledger: AccountLedger,
        selector: AccountSelector,
        pool: WorkerPool,
        *,
        clock: Clock = utc_now,
        poll_interval: float = 5.0,
        stale_after: timedelta = timedelta(seconds=240),
        claim_limit: int = 10,
        retry_horizon: timedelta = timedelta(hours=1),
        activity: ActivityLog | None = None,
        name: str | None = None,
        stats_path: str = "",
        heartbeat_path: str = "",
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {poll_interval!r}.")
        self._queue = queue
        self._jobs = jobs
        self._accounts = accounts
        self._ledger = ledger
        self._selector = selector
        self._pool = pool
        self._clock = clock
        self._poll_interval = poll_interval
        self._stale_after = stale_after
        self._claim_limit = claim_limit
        self._retry_horizon = retry_horizon
        self._activity = activity or ActivityLog()
        self._name = name or f"sched-{uuid.uuid4().hex[:6]}"
        self._stats_path = stats_path
        self._heartbeat_path = heartbeat_path

        self._stats = SchedulerStats()
        self._worker_seq = itertools.count(1)
        self._wake = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._stopping = False
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Ask the loop to tick as soon as possible."""
        self._wake.set()

    def start(self) -> None:
        """Start :meth:`run_forever` as a background task.

        Raises:
            SchedulerError: If the loop is already running.
        """
        if self.running:
            raise SchedulerError(f"Scheduler {self._name} is already running")
        self._stopping = False
        self._task = asyncio.create_task(self.run_forever(), name=f"jobrota-{self._name}")

    async def stop(self) -> None:
        """Stop the loop after the current tick.  In-flight executions are untouched."""
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def run_forever(self) -> None:
        """Tick until :meth:`stop` is called.

        Exceptions raised by a tick are logged and the loop carries on after
        the poll interval.
        """
        logger.info(
            "Scheduler %s started (poll interval %.1fs, %d worker slot(s))",
            self._name,
            self._poll_interval,
            self._pool.capacity,
        )
        while not self._stopping:
            self._wake.clear()
            try:
                await self.tick()
            except Exception:
                self._stats.record_failure()
                logger.exception(
                    "Unhandled exception in scheduler tick — will retry after interval.",
                    extra={"event": events.TICK_ERROR},
                )
            self._write_operator_files()
            if self._stopping:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
        logger.info("Scheduler %s stopped. %s", self._name, self._stats.format_summary())

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickStats:
        """Run one scheduling pass.  See the module docstring."""
        async with self._tick_lock:
            tick_id = uuid.uuid4().hex[:8]
            token = TICK_ID_CTX.set(tick_id)
            started = time.monotonic()
            try:
                stats = TickStats(tick_id=tick_id)
                logger.debug("Tick started", extra={"event": events.TICK_START})
                stats.requeued_stale = await self._queue.requeue_stale(
                    self._stale_after, exclude_ids=self._pool.active_entry_ids()
                )
                await self._dispatch(stats)
                stats.duration_s = time.monotonic() - started
                self._stats.update(stats)
                if stats.claimed or stats.requeued_stale:
                    logger.info(
                        "%s", stats.format_tick_report(), extra={"event": events.TICK_COMPLETE}
                    )
                else:
                    logger.debug(
                        "%s", stats.format_tick_report(), extra={"event": events.TICK_COMPLETE}
                    )
                return stats
            finally:
                TICK_ID_CTX.reset(token)

    async def _dispatch(self, stats: TickStats) -> None:
        exhausted: set[tuple[str, JobType]] = set()

        async def _claimable(entry: QueueEntry, job_type: JobType) -> bool:
            return (entry.tenant_id, job_type) not in exhausted

        for _ in range(self._claim_limit):
            if self._pool.available <= 0:
                stats.pool_full = True
                return
            entry = await self._queue.claim_next(self._next_worker_id(), _claimable)
            if entry is None:
                return
            stats.claimed += 1

            job = await self._jobs.get(entry.job_id)
            try:
                account = await self._resolve_account(entry, job)
            except NoEligibleAccountError as exc:
                await self._defer(entry, job, exc)
                exhausted.add((entry.tenant_id, job.job_type))
                stats.deferred += 1
                continue

            if job.status is JobStatus.PENDING:
                await self._mark_started(job)

            if not await self._pool.submit(entry, account, job):
                await self._queue.release(entry.id)
                stats.pool_full = True
                return
            stats.dispatched += 1

    async def _resolve_account(self, entry: QueueEntry, job: Job) -> Account:
        """Return the account to run *entry* with.

        A bound account is used when it is eligible right now; otherwise the
        entry falls back to the tenant pool.

        Raises:
            NoEligibleAccountError: If the tenant has no usable account.
        """
        if entry.account_id is not None:
            now = self._clock()
            bound = await self._accounts.find(entry.account_id)
            if (
                bound is not None
                and bound.tenant_id == entry.tenant_id
                and self._ledger.is_eligible(bound, now, job.job_type)
                and await self._ledger.within_hourly_limit(bound, now, job.job_type)
            ):
                return bound
            logger.debug(
                "Bound account %s unavailable for entry %s; falling back to the tenant pool",
                entry.account_id,
                entry.id,
            )
        return await self._selector.select(entry.tenant_id, job.job_type, job.config.strategy)

    async def _defer(self, entry: QueueEntry, job: Job, exc: NoEligibleAccountError) -> None:
        now: datetime = self._clock()
        wait = exc.retry_after if exc.retry_after is not None else self._retry_horizon
        until = now + max(wait, _MIN_DEFERRAL)
        await self._queue.release(entry.id, available_at=until)
        others = await self._queue.defer(entry.tenant_id, job.job_type, until)
        reason = (
            f"next account usable in {exc.retry_after}"
            if exc.should_wait
            else "no accounts available"
        )
        await self._activity.record(
            events.ENTRY_DEFERRED,
            f"Entry {entry.id} deferred until {until.isoformat()} ({reason}; "
            f"{others} more {job.job_type} entr{'y' if others == 1 else 'ies'} deferred)",
            tenant_id=entry.tenant_id,
            job_id=job.id,
            entry_id=entry.id,
            level=logging.INFO if exc.should_wait else logging.WARNING,
        )

    async def _mark_started(self, job: Job) -> None:
        if await self._jobs.transition(job.id, JobStatus.RUNNING, allowed_from=(JobStatus.PENDING,)):
            await self._activity.record(
                events.JOB_STARTED,
                f"Job {job.id} started ({job.total_items} item(s), {job.job_type})",
                tenant_id=job.tenant_id,
                job_id=job.id,
            )

    def _next_worker_id(self) -> str:
        return f"{self._name}-w{next(self._worker_seq)}"

    def _write_operator_files(self) -> None:
        if self._heartbeat_path:
            write_heartbeat(self._heartbeat_path)
        if self._stats_path:
            write_stats_file(self._stats, self._stats_path, self._pool.counters())
