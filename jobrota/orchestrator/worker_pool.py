"""Bounded pool of concurrent executions.

The pool owns every in-flight execution.  The scheduler loop hands it a
claimed entry plus the resolved account; the pool:

1. Reserves a slot (``submit`` returns ``False`` when every slot is busy and
   leaves the entry untouched).
2. Moves the entry ``assigned → processing`` and counts the dispatch in the
   account ledger.
3. Runs the execution engine in its own :class:`asyncio.Task` under a hard
   timeout.
4. Feeds the outcome to the account ledger (failure escalation) and to
   :meth:`~jobrota.storage.queue.QueueStore.finalize` (retry policy and job
   counters), then frees the slot and calls ``on_slot_freed`` so the
   scheduler can refill it straight away.

A slot is always reclaimed, whatever the engine does: exceptions are
classified into an :class:`~jobrota.core.models.ExecutionOutcome`, and an
execution exceeding ``execution_timeout`` is cancelled and recorded as a
transient failure.  A timeout never affects sibling executions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable

from jobrota.accounts.escalation import outcome_from_exception
from jobrota.accounts.ledger import AccountLedger
from jobrota.core import events
from jobrota.core.clock import Clock, utc_now
from jobrota.core.exceptions import SchedulerError
from jobrota.core.models import (
    Account,
    ErrorClass,
    ExecutionOutcome,
    Job,
    QueueEntry,
    WorkerInfo,
)
from jobrota.execution.base import ExecutionEngine
from jobrota.storage.queue import FinalizeDisposition, FinalizeResult, QueueStore

__all__ = ["WorkerPool"]

logger = logging.getLogger(__name__)

SlotFreedCallback = Callable[[], None]
JobClosedCallback = Callable[[FinalizeResult], Awaitable[None]]


class WorkerPool:
    """Runs up to ``max_concurrent_workers`` executions at once.

    Args:
        queue: Queue store used for ``processing`` and ``finalize``.
        ledger: Account ledger receiving dispatches and outcomes.
        engine: Execution engine that performs the work.
        max_concurrent_workers: Global ceiling on concurrent executions.
        execution_timeout: Hard limit for one execution, in seconds.
        clock: Source of "now" for worker start times.
        on_slot_freed: Called (synchronously) every time a slot frees up.
        on_job_closed: Awaited when a finalize closes the owning job.
    """

    def __init__(
        self,
        queue: QueueStore,
        ledger: AccountLedger,
        engine: ExecutionEngine,
        *,
        max_concurrent_workers: int = 5,
        execution_timeout: float = 120.0,
        clock: Clock = utc_now,
        on_slot_freed: SlotFreedCallback | None = None,
        on_job_closed: JobClosedCallback | None = None,
    ) -> None:
        if max_concurrent_workers < 1:
            raise ValueError(
                f"max_concurrent_workers must be ≥ 1, got {max_concurrent_workers!r}."
            )
        if execution_timeout <= 0:
            raise ValueError(f"execution_timeout must be > 0, got {execution_timeout!r}.")
        self._queue = queue
        self._ledger = ledger
        self._engine = engine
        self._capacity = max_concurrent_workers
        self._timeout = execution_timeout
        self._clock = clock
        self._on_slot_freed = on_slot_freed
        self._on_job_closed = on_job_closed
        self._workers: dict[str, WorkerInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._counters: Counter[str] = Counter()
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def active_count(self) -> int:
        """Slots currently held (including executions still being set up)."""
        return len(self._workers)

    @property
    def available(self) -> int:
        return self._capacity - len(self._workers)

    def active_entry_ids(self) -> set[str]:
        """Ids of the entries this pool currently holds."""
        return set(self._workers)

    def workers(self) -> list[WorkerInfo]:
        """In-flight executions, oldest first."""
        return sorted(self._workers.values(), key=lambda w: (w.started_at, w.entry_id))

    def counters(self) -> dict[str, int]:
        """Lifetime execution counters: dispatched, completed, retried, failed, timeouts."""
        keys = ("dispatched", "completed", "retried", "failed", "timeouts")
        return {key: self._counters[key] for key in keys}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, entry: QueueEntry, account: Account, job: Job) -> bool:
        """Start executing *entry* under *account*.

        Args:
            entry: A claimed entry in ``assigned`` state.
            account: The resolved account for this attempt.
            job: The owning job.

        Returns:
            ``False`` if every slot is busy (the entry is left untouched),
            ``True`` once the execution task has been started.

        Raises:
            SchedulerError: If the pool has been shut down.
            InvalidTransitionError: If *entry* is no longer assigned to its
                worker (e.g. it was requeued as stale in the meantime).
        """
        if self._closed:
            raise SchedulerError("Worker pool has been shut down")
        if len(self._workers) >= self._capacity:
            logger.debug("Pool at capacity (%d); entry %s not submitted", self._capacity, entry.id)
            return False

        worker_id = entry.worker_id or f"worker-{entry.id[:8]}"
        info = WorkerInfo(
            worker_id=worker_id,
            entry_id=entry.id,
            job_id=job.id,
            tenant_id=entry.tenant_id,
            account_id=account.id,
            started_at=self._clock(),
        )
        # Hold the slot across the awaits below.
        self._workers[entry.id] = info
        try:
            await self._queue.mark_processing(entry.id, worker_id, account.id)
            await self._ledger.record_dispatch(account.id)
        except BaseException:
            self._workers.pop(entry.id, None)
            raise

        self._counters["dispatched"] += 1
        logger.info(
            "Entry %s processing on %s with account %s (job=%s)",
            entry.id,
            worker_id,
            account.display_name,
            job.id,
            extra={
                "event": events.ENTRY_PROCESSING,
                "entry_id": entry.id,
                "account_id": account.id,
            },
        )
        self._tasks[entry.id] = asyncio.create_task(
            self._run(entry, account, job),
            name=f"jobrota-{worker_id}",
        )
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight executions to finish.

        Returns:
            ``True`` if the pool is idle, ``False`` if *timeout* expired
            first.
        """
        tasks = list(self._tasks.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def shutdown(self, grace: float | None = None) -> None:
        """Drain for up to *grace* seconds, then cancel whatever is left.

        Cancelled entries stay in ``processing`` and are requeued as stale
        by the next scheduler that runs against the same database.
        """
        self._closed = True
        if await self.drain(grace):
            return
        remaining = list(self._tasks.values())
        logger.warning("Cancelling %d execution(s) still running at shutdown", len(remaining))
        for task in remaining:
            task.cancel()
        await asyncio.gather(*remaining, return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, entry: QueueEntry, account: Account, job: Job) -> None:
        result: FinalizeResult | None = None
        try:
            outcome = await self._execute(entry, account, job)
            try:
                await self._ledger.record_outcome(
                    account.id, outcome, job_id=job.id, entry_id=entry.id
                )
            except Exception:
                logger.exception("Failed to record outcome for account %s", account.id)
            result = await self._queue.finalize(entry.id, outcome)
            self._count(result)
        except Exception:
            logger.exception("Worker for entry %s crashed; the entry will be requeued", entry.id)
        finally:
            self._workers.pop(entry.id, None)
            self._tasks.pop(entry.id, None)

        if result is not None and result.job_closed and self._on_job_closed is not None:
            try:
                await self._on_job_closed(result)
            except Exception:
                logger.exception("Job-closed hook failed for job %s", result.job_id)
        if self._on_slot_freed is not None:
            self._on_slot_freed()

    async def _execute(self, entry: QueueEntry, account: Account, job: Job) -> ExecutionOutcome:
        """Run the engine under the hard timeout and always return an outcome."""
        started = time.monotonic()
        task = asyncio.ensure_future(self._engine.execute(job, account, entry.work_item))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            self._counters["timeouts"] += 1
            logger.warning(
                "Entry %s timed out after %.1fs on account %s",
                entry.id,
                self._timeout,
                account.id,
                extra={"event": events.ENTRY_TIMEOUT, "entry_id": entry.id},
            )
            return ExecutionOutcome.failure(
                ErrorClass.TRANSIENT, f"execution timed out after {self._timeout:g}s"
            )
        if task.cancelled():
            return ExecutionOutcome.failure(ErrorClass.TRANSIENT, "execution was cancelled")

        exc = task.exception()
        if exc is not None:
            logger.debug("Engine raised %s for entry %s: %s", type(exc).__name__, entry.id, exc)
            return outcome_from_exception(exc)

        outcome = task.result()
        if not isinstance(outcome, ExecutionOutcome):
            return ExecutionOutcome.failure(
                ErrorClass.TRANSIENT, f"engine returned {type(outcome).__name__}"
            )
        if outcome.latency_ms is None:
            outcome = outcome.model_copy(
                update={"latency_ms": int((time.monotonic() - started) * 1000)}
            )
        return outcome

    def _count(self, result: FinalizeResult) -> None:
        if result.disposition is FinalizeDisposition.COMPLETED:
            self._counters["completed"] += 1
        elif result.disposition is FinalizeDisposition.RETRIED:
            self._counters["retried"] += 1
        elif result.disposition is FinalizeDisposition.FAILED:
            self._counters["failed"] += 1
