"""Durable, ordered queue of work items with atomic claim.

:class:`QueueStore` owns the ``queue_entries`` table and the job counters
that move when an entry reaches a terminal state.

Entry lifecycle
~~~~~~~~~~~~~~~
::

    queued ──claim_next──▶ assigned ──mark_processing──▶ processing
      ▲                       │                             │
      │◀──────release─────────┘                             │
      │◀──────────finalize (retryable failure)──────────────┤
      │                                                     ├──▶ completed
      │◀──────requeue_stale (orphaned)──────────────────────┴──▶ failed

Claiming is an optimistic compare-and-swap: candidates are read without a
lock, then ``UPDATE ... WHERE id = ? AND status = 'queued'`` takes exactly
one of them.  A lost race moves on to the next candidate; only when every
candidate read was lost does the attempt raise
:class:`ConcurrentClaimConflict`, which is retried transparently with
:mod:`tenacity` (on a freshly read window) and never escapes
:meth:`QueueStore.claim_next`.  Two callers (tasks, or processes sharing the
database file) can therefore never receive the same entry.

Typical usage::

    store = QueueStore(conn)
    await store.enqueue(job, ["https://a", "https://b"])

    entry = await store.claim_next("worker-1")
    if entry is not None:
        await store.mark_processing(entry.id, "worker-1", "acc-1")
        result = await store.finalize(entry.id, ExecutionOutcome.ok())
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Collection, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Final

import aiosqlite
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_none,
)

from jobrota.core import events
from jobrota.core.clock import Clock, format_ts, parse_ts, utc_now
from jobrota.core.exceptions import (
    ConcurrentClaimConflict,
    EntryNotFoundError,
    InvalidTransitionError,
)
from jobrota.core.models import (
    EntryStatus,
    ErrorClass,
    ExecutionOutcome,
    Job,
    JobStatus,
    JobType,
    QueueEntry,
)

__all__ = [
    "ClaimPredicate",
    "FinalizeDisposition",
    "FinalizeResult",
    "QueueStore",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Default number of queued entries inspected per claim attempt.
_DEFAULT_SCAN_LIMIT: Final[int] = 10

#: Default number of claim attempts before a contended claim gives up.
_DEFAULT_CLAIM_ATTEMPTS: Final[int] = 5

#: Job statuses whose entries may be claimed.
_CLAIMABLE_JOB_STATUSES: Final[tuple[str, ...]] = (
    str(JobStatus.PENDING),
    str(JobStatus.RUNNING),
)

#: Job statuses that may still be closed when their last entry finalises.
_CLOSABLE_JOB_STATUSES: Final[tuple[str, ...]] = (
    str(JobStatus.PENDING),
    str(JobStatus.RUNNING),
    str(JobStatus.PAUSED),
)

_HELD: Final[tuple[str, ...]] = (str(EntryStatus.ASSIGNED), str(EntryStatus.PROCESSING))

#: Async predicate consulted for every claim candidate.  Receives the entry
#: and its job's type; returning ``False`` skips the entry for this claim.
ClaimPredicate = Callable[[QueueEntry, JobType], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class FinalizeDisposition(StrEnum):
    """What :meth:`QueueStore.finalize` did with an entry."""

    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    NOOP = "noop"
    """The entry was not held by a worker (already finalised or requeued)."""


@dataclass(frozen=True)
class FinalizeResult:
    """Outcome of one :meth:`QueueStore.finalize` call.

    Attributes:
        entry_id: The finalised entry.
        job_id: The entry's job.
        disposition: Transition applied to the entry.
        job_status: New job status when this call closed the job, else
            ``None``.
    """

    entry_id: str
    job_id: str
    disposition: FinalizeDisposition
    job_status: JobStatus | None = None

    @property
    def job_closed(self) -> bool:
        return self.job_status is not None


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _dumps_result(payload: Any) -> str:
    """Serialise an execution payload; values JSON cannot represent are stored via ``str()``.

    Raises:
        TypeError: On non-string mapping keys JSON cannot encode.
        ValueError: On circular references.
    """
    return json.dumps(payload, default=str)


def _row_to_entry(row: aiosqlite.Row) -> QueueEntry:
    return QueueEntry(
        id=row["id"],
        job_id=row["job_id"],
        tenant_id=row["tenant_id"],
        account_id=row["account_id"],
        work_item=_loads(row["work_item"]),
        status=EntryStatus(row["status"]),
        priority=row["priority"],
        retry_count=row["retry_count"],
        attempts=row["attempts"],
        max_retries=row["max_retries"],
        worker_id=row["worker_id"],
        available_at=parse_ts(row["available_at"]),
        last_error=row["last_error"],
        last_error_class=ErrorClass(row["last_error_class"]) if row["last_error_class"] else None,
        result=_loads(row["result"]),
        created_at=parse_ts(row["created_at"]),
        assigned_at=parse_ts(row["assigned_at"]),
        started_at=parse_ts(row["started_at"]),
        completed_at=parse_ts(row["completed_at"]),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class QueueStore:
    """Durable holding area for queue entries; supports atomic claim.

    Multi-statement groups (finalise + job counters + job closure) run
    under an internal :class:`asyncio.Lock` so they commit together on the
    shared connection.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
        clock: Source of "now".
        claim_scan_limit: Queued entries inspected per claim attempt.
        claim_attempts: Attempts before a contended claim returns ``None``.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        *,
        clock: Clock = utc_now,
        claim_scan_limit: int = _DEFAULT_SCAN_LIMIT,
        claim_attempts: int = _DEFAULT_CLAIM_ATTEMPTS,
    ) -> None:
        if claim_scan_limit < 1:
            raise ValueError(f"claim_scan_limit must be ≥ 1, got {claim_scan_limit!r}.")
        self._conn = conn
        self._clock = clock
        self._scan_limit = claim_scan_limit
        self._claim_attempts = claim_attempts
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job: Job,
        work_items: Sequence[Any],
        candidate_account_ids: Sequence[str] | None = None,
        priority: int = 0,
    ) -> list[QueueEntry]:
        """Create one queued entry per work item.

        With *candidate_account_ids* (fan-out), entries are bound to the
        candidates in round-robin order; without them (tenant pool), entries
        carry no account and the selector resolves one at dispatch time.

        Args:
            job: Owning job; its ``config.max_retries`` is copied onto every
                entry.
            work_items: JSON-serialisable work item values.
            candidate_account_ids: Optional accounts to bind entries to.
            priority: Lower value is claimed first.

        Returns:
            The created entries, in work-item order.
        """
        now = self._clock()
        candidates = list(candidate_account_ids or [])
        entries = [
            QueueEntry(
                id=uuid.uuid4().hex,
                job_id=job.id,
                tenant_id=job.tenant_id,
                account_id=candidates[index % len(candidates)] if candidates else None,
                work_item=item,
                priority=priority,
                max_retries=job.config.max_retries,
                created_at=now,
            )
            for index, item in enumerate(work_items)
        ]
        if not entries:
            return []

        async with self._lock:
            await self._conn.executemany(
                """
                INSERT INTO queue_entries
                    (id, job_id, tenant_id, account_id, work_item, status,
                     priority, retry_count, max_retries, created_at)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                [
                    (
                        entry.id,
                        entry.job_id,
                        entry.tenant_id,
                        entry.account_id,
                        json.dumps(entry.work_item),
                        str(EntryStatus.QUEUED),
                        entry.priority,
                        entry.max_retries,
                        format_ts(now),
                    )
                    for entry in entries
                ],
            )
            await self._conn.commit()

        logger.info(
            "Enqueued %d entr%s for job %s (%s)",
            len(entries),
            "y" if len(entries) == 1 else "ies",
            job.id,
            "fan-out" if candidates else "tenant pool",
            extra={"event": events.ENTRY_ENQUEUED, "job_id": job.id, "count": len(entries)},
        )
        return entries

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_next(
        self,
        worker_id: str,
        is_claimable: ClaimPredicate | None = None,
    ) -> QueueEntry | None:
        """Atomically claim the best queued entry.

        Candidates are queued entries of pending or running jobs whose
        ``available_at`` has passed, ordered by priority then insertion
        order.  At most ``claim_scan_limit`` candidates are inspected.

        Args:
            worker_id: Identifier stamped on the claimed entry.
            is_claimable: Optional predicate; candidates it rejects are
                skipped and stay queued.

        Returns:
            The claimed entry in ``assigned`` state, or ``None`` when nothing
            is claimable (or every attempt lost a race).
        """

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.debug(
                "Claim attempt %d/%d lost a race (%s); retrying",
                rs.attempt_number,
                self._claim_attempts,
                exc,
            )

        claimed: QueueEntry | None = None
        try:
            async for attempt in AsyncRetrying(
                wait=wait_none(),
                stop=stop_after_attempt(self._claim_attempts),
                retry=retry_if_exception_type(ConcurrentClaimConflict),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    claimed = await self._claim_once(worker_id, is_claimable)
        except ConcurrentClaimConflict as exc:
            logger.warning(
                "Giving up claim for %s after %d contended attempts (last: %s)",
                worker_id,
                self._claim_attempts,
                exc.entry_id,
            )
            return None

        if claimed is not None:
            logger.debug(
                "Entry %s assigned to %s (job=%s priority=%d)",
                claimed.id,
                worker_id,
                claimed.job_id,
                claimed.priority,
                extra={"event": events.ENTRY_ASSIGNED, "entry_id": claimed.id},
            )
        return claimed

    async def _claim_once(
        self,
        worker_id: str,
        is_claimable: ClaimPredicate | None,
    ) -> QueueEntry | None:
        now = self._clock()
        placeholders = ",".join("?" * len(_CLAIMABLE_JOB_STATUSES))
        cursor = await self._conn.execute(
            f"""
            SELECT q.*, j.job_type AS job_type
            FROM queue_entries AS q
            JOIN jobs AS j ON j.id = q.job_id
            WHERE q.status = ?
              AND j.status IN ({placeholders})
              AND (q.available_at IS NULL OR q.available_at <= ?)
            ORDER BY q.priority ASC, q.seq ASC
            LIMIT ?
            """,
            (str(EntryStatus.QUEUED), *_CLAIMABLE_JOB_STATUSES, format_ts(now), self._scan_limit),
        )
        rows = await cursor.fetchall()

        lost: str | None = None
        for row in rows:
            entry = _row_to_entry(row)
            if is_claimable is not None and not await is_claimable(entry, JobType(row["job_type"])):
                continue

            async with self._lock:
                update = await self._conn.execute(
                    """
                    UPDATE queue_entries
                    SET status = ?, worker_id = ?, assigned_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        str(EntryStatus.ASSIGNED),
                        worker_id,
                        format_ts(now),
                        entry.id,
                        str(EntryStatus.QUEUED),
                    ),
                )
                await self._conn.commit()
            if update.rowcount == 0:
                # Taken by another claimer; the next candidate is still fair game.
                lost = entry.id
                continue
            return entry.model_copy(
                update={
                    "status": EntryStatus.ASSIGNED,
                    "worker_id": worker_id,
                    "assigned_at": now,
                }
            )
        if lost is not None:
            # Every candidate in the window was lost; re-read a fresh window.
            raise ConcurrentClaimConflict(lost)
        return None

    # ------------------------------------------------------------------
    # Held-entry transitions
    # ------------------------------------------------------------------

    async def mark_processing(
        self,
        entry_id: str,
        worker_id: str,
        account_id: str,
    ) -> QueueEntry:
        """Move an assigned entry to ``processing`` under *account_id*.

        Raises:
            EntryNotFoundError: If the entry does not exist.
            InvalidTransitionError: If the entry is not assigned to
                *worker_id*.
        """
        now = self._clock()
        async with self._lock:
            cursor = await self._conn.execute(
                """
                UPDATE queue_entries
                SET status = ?, account_id = ?, started_at = ?, attempts = attempts + 1
                WHERE id = ? AND status = ? AND worker_id = ?
                """,
                (
                    str(EntryStatus.PROCESSING),
                    account_id,
                    format_ts(now),
                    entry_id,
                    str(EntryStatus.ASSIGNED),
                    worker_id,
                ),
            )
            await self._conn.commit()
        if cursor.rowcount == 0:
            current = await self.get(entry_id)
            raise InvalidTransitionError(
                "entry", entry_id, str(current.status), str(EntryStatus.PROCESSING)
            )
        return await self.get(entry_id)

    async def release(self, entry_id: str, available_at: datetime | None = None) -> bool:
        """Return an assigned entry to the queue without consuming a retry.

        Args:
            entry_id: Entry to release.
            available_at: Earliest time the entry may be claimed again.

        Returns:
            ``True`` if the entry was released, ``False`` if it was not in
            ``assigned`` state.

        Raises:
            EntryNotFoundError: If the entry does not exist.
        """
        async with self._lock:
            cursor = await self._conn.execute(
                """
                UPDATE queue_entries
                SET status = ?, worker_id = NULL, assigned_at = NULL,
                    started_at = NULL, available_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    str(EntryStatus.QUEUED),
                    format_ts(available_at),
                    entry_id,
                    str(EntryStatus.ASSIGNED),
                ),
            )
            await self._conn.commit()
        if cursor.rowcount == 0:
            await self.get(entry_id)
            return False
        return True

    async def finalize(self, entry_id: str, outcome: ExecutionOutcome) -> FinalizeResult:
        """Record the outcome of an attempt and apply the retry policy.

        * Success → ``completed`` with the outcome payload as ``result``
          (non-JSON values such as datetimes are stored as strings; a
          payload that still cannot be encoded fails the entry as
          ``permanent``).
        * Retryable failure with budget left → back to ``queued`` with
          ``retry_count + 1``; the account binding is dropped when the
          failure class rotates accounts.
        * Otherwise → ``failed``.

        Terminal transitions bump the job counters exactly once and close
        the job when no entry is left outside a terminal state.  Calling
        ``finalize`` on an entry that is not held by a worker is a no-op.

        Raises:
            EntryNotFoundError: If *entry_id* does not exist.
        """
        now = self._clock()
        stamp = format_ts(now)
        result_json: str | None = None
        if outcome.success:
            try:
                result_json = _dumps_result(outcome.payload)
            except (TypeError, ValueError) as exc:
                logger.warning("Entry %s returned a result that cannot be stored: %s", entry_id, exc)
                outcome = ExecutionOutcome.failure(
                    ErrorClass.PERMANENT, f"result is not JSON-serialisable: {exc}"
                )
        async with self._lock:
            cursor = await self._conn.execute(
                """
                SELECT q.*, j.status AS job_status
                FROM queue_entries AS q JOIN jobs AS j ON j.id = q.job_id
                WHERE q.id = ?
                """,
                (entry_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise EntryNotFoundError(entry_id)
            entry = _row_to_entry(row)
            job_status = JobStatus(row["job_status"])

            if not entry.status.is_held:
                logger.debug(
                    "finalize(%s) ignored: entry already %s", entry_id, entry.status
                )
                return FinalizeResult(entry_id, entry.job_id, FinalizeDisposition.NOOP)

            disposition = self._decide(entry, outcome, job_status)
            held_placeholders = ",".join("?" * len(_HELD))

            if disposition is FinalizeDisposition.COMPLETED:
                update = await self._conn.execute(
                    f"""
                    UPDATE queue_entries
                    SET status = ?, result = ?, completed_at = ?, worker_id = NULL,
                        last_error = NULL, last_error_class = NULL
                    WHERE id = ? AND status IN ({held_placeholders})
                    """,
                    (
                        str(EntryStatus.COMPLETED),
                        result_json,
                        stamp,
                        entry_id,
                        *_HELD,
                    ),
                )
            elif disposition is FinalizeDisposition.RETRIED:
                rotate = outcome.error_class is not None and outcome.error_class.rotates_account
                update = await self._conn.execute(
                    f"""
                    UPDATE queue_entries
                    SET status = ?, retry_count = retry_count + 1, worker_id = NULL,
                        assigned_at = NULL, started_at = NULL, available_at = NULL,
                        last_error = ?, last_error_class = ?,
                        account_id = CASE WHEN ? THEN NULL ELSE account_id END
                    WHERE id = ? AND status IN ({held_placeholders})
                    """,
                    (
                        str(EntryStatus.QUEUED),
                        outcome.error_message,
                        str(outcome.error_class) if outcome.error_class else None,
                        int(rotate),
                        entry_id,
                        *_HELD,
                    ),
                )
            else:
                update = await self._conn.execute(
                    f"""
                    UPDATE queue_entries
                    SET status = ?, completed_at = ?, worker_id = NULL,
                        last_error = ?, last_error_class = ?
                    WHERE id = ? AND status IN ({held_placeholders})
                    """,
                    (
                        str(EntryStatus.FAILED),
                        stamp,
                        outcome.error_message,
                        str(outcome.error_class) if outcome.error_class else None,
                        entry_id,
                        *_HELD,
                    ),
                )

            if update.rowcount == 0:
                await self._conn.rollback()
                return FinalizeResult(entry_id, entry.job_id, FinalizeDisposition.NOOP)

            closed: JobStatus | None = None
            if disposition is not FinalizeDisposition.RETRIED:
                succeeded = int(disposition is FinalizeDisposition.COMPLETED)
                await self._conn.execute(
                    """
                    UPDATE jobs SET
                        processed_items = processed_items + 1,
                        successful_items = successful_items + ?,
                        failed_items = failed_items + ?
                    WHERE id = ?
                    """,
                    (succeeded, 1 - succeeded, entry.job_id),
                )
                closed = await self._close_job_if_done(entry.job_id, stamp)
            await self._conn.commit()

        self._log_disposition(entry, disposition, outcome)
        if closed is not None:
            logger.info(
                "Job %s %s",
                entry.job_id,
                closed,
                extra={
                    "event": (
                        events.JOB_COMPLETED if closed is JobStatus.COMPLETED else events.JOB_FAILED
                    ),
                    "job_id": entry.job_id,
                },
            )
        return FinalizeResult(entry_id, entry.job_id, disposition, closed)

    @staticmethod
    def _decide(
        entry: QueueEntry,
        outcome: ExecutionOutcome,
        job_status: JobStatus,
    ) -> FinalizeDisposition:
        if outcome.success:
            return FinalizeDisposition.COMPLETED
        error_class = outcome.error_class or ErrorClass.TRANSIENT
        if (
            error_class.retryable
            and entry.retry_count < entry.max_retries
            and not job_status.is_terminal
        ):
            return FinalizeDisposition.RETRIED
        return FinalizeDisposition.FAILED

    async def _close_job_if_done(self, job_id: str, stamp: str | None) -> JobStatus | None:
        """Close *job_id* if every entry is terminal.  Caller holds the lock."""
        placeholders = ",".join("?" * len(_CLOSABLE_JOB_STATUSES))
        cursor = await self._conn.execute(
            f"""
            UPDATE jobs SET
                status = CASE WHEN successful_items > 0 THEN ? ELSE ? END,
                completed_at = ?
            WHERE id = ?
              AND status IN ({placeholders})
              AND NOT EXISTS (
                  SELECT 1 FROM queue_entries
                  WHERE job_id = ? AND status NOT IN (?, ?)
              )
            """,
            (
                str(JobStatus.COMPLETED),
                str(JobStatus.FAILED),
                stamp,
                job_id,
                *_CLOSABLE_JOB_STATUSES,
                job_id,
                str(EntryStatus.COMPLETED),
                str(EntryStatus.FAILED),
            ),
        )
        if cursor.rowcount == 0:
            return None
        status_cursor = await self._conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,))
        row = await status_cursor.fetchone()
        return JobStatus(row[0]) if row else None

    @staticmethod
    def _log_disposition(
        entry: QueueEntry,
        disposition: FinalizeDisposition,
        outcome: ExecutionOutcome,
    ) -> None:
        if disposition is FinalizeDisposition.COMPLETED:
            logger.info(
                "Entry %s completed (job=%s)",
                entry.id,
                entry.job_id,
                extra={"event": events.ENTRY_COMPLETED, "entry_id": entry.id},
            )
        elif disposition is FinalizeDisposition.RETRIED:
            logger.info(
                "Entry %s requeued for retry %d/%d after %s: %s",
                entry.id,
                entry.retry_count + 1,
                entry.max_retries,
                outcome.error_class,
                outcome.error_message,
                extra={"event": events.ENTRY_RETRIED, "entry_id": entry.id},
            )
        else:
            logger.warning(
                "Entry %s failed permanently after %d retr%s (%s): %s",
                entry.id,
                entry.retry_count,
                "y" if entry.retry_count == 1 else "ies",
                outcome.error_class,
                outcome.error_message,
                extra={"event": events.ENTRY_FAILED, "entry_id": entry.id},
            )

    # ------------------------------------------------------------------
    # Queue maintenance
    # ------------------------------------------------------------------

    async def requeue_stale(
        self,
        older_than: timedelta,
        exclude_ids: Collection[str] = (),
    ) -> int:
        """Return orphaned ``assigned`` / ``processing`` entries to the queue.

        An entry is orphaned when it was assigned (or started) more than
        *older_than* ago and is not in *exclude_ids* (the entries a live
        worker pool is still running).  The retry budget is not consumed.

        Returns:
            Number of entries requeued.
        """
        cutoff = format_ts(self._clock() - older_than)
        excluded = list(exclude_ids)
        exclusion = ""
        if excluded:
            exclusion = f" AND id NOT IN ({','.join('?' * len(excluded))})"
        async with self._lock:
            cursor = await self._conn.execute(
                f"""
                UPDATE queue_entries
                SET status = ?, worker_id = NULL, assigned_at = NULL, started_at = NULL
                WHERE status IN (?, ?)
                  AND COALESCE(started_at, assigned_at) < ?{exclusion}
                """,
                (str(EntryStatus.QUEUED), *_HELD, cutoff, *excluded),
            )
            await self._conn.commit()
        count = cursor.rowcount
        if count:
            logger.warning(
                "Requeued %d stale entr%s (held longer than %s)",
                count,
                "y" if count == 1 else "ies",
                older_than,
                extra={"event": events.ENTRIES_REQUEUED_STALE, "count": count},
            )
        return count

    async def defer(self, tenant_id: str, job_type: JobType, until: datetime) -> int:
        """Push back every queued entry of *tenant_id* / *job_type* until *until*.

        Used when the tenant has no usable account for that job type, so the
        scheduler does not claim and release the same entries every tick.

        Returns:
            Number of entries deferred.
        """
        stamp = format_ts(until)
        async with self._lock:
            cursor = await self._conn.execute(
                """
                UPDATE queue_entries SET available_at = ?
                WHERE status = ? AND tenant_id = ?
                  AND (available_at IS NULL OR available_at < ?)
                  AND job_id IN (SELECT id FROM jobs WHERE tenant_id = ? AND job_type = ?)
                """,
                (stamp, str(EntryStatus.QUEUED), tenant_id, stamp, tenant_id, str(job_type)),
            )
            await self._conn.commit()
        return cursor.rowcount

    async def clear_deferrals(self, tenant_id: str) -> int:
        """Make every queued entry of *tenant_id* claimable immediately."""
        async with self._lock:
            cursor = await self._conn.execute(
                """
                UPDATE queue_entries SET available_at = NULL
                WHERE status = ? AND tenant_id = ? AND available_at IS NOT NULL
                """,
                (str(EntryStatus.QUEUED), tenant_id),
            )
            await self._conn.commit()
        return cursor.rowcount

    async def cancel_queued(self, job_id: str) -> tuple[int, int]:
        """Fail every still-queued entry of *job_id* and count them on the job.

        Returns:
            ``(cancelled, never_attempted)``: entries failed by this call and,
            among them, those that were never dispatched.
        """
        stamp = format_ts(self._clock())
        async with self._lock:
            cursor = await self._conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(attempts = 0), 0)
                FROM queue_entries WHERE job_id = ? AND status = ?
                """,
                (job_id, str(EntryStatus.QUEUED)),
            )
            row = await cursor.fetchone()
            update = await self._conn.execute(
                """
                UPDATE queue_entries
                SET status = ?, completed_at = ?, last_error = 'job cancelled'
                WHERE job_id = ? AND status = ?
                """,
                (str(EntryStatus.FAILED), stamp, job_id, str(EntryStatus.QUEUED)),
            )
            cancelled = update.rowcount
            if cancelled:
                await self._conn.execute(
                    """
                    UPDATE jobs SET
                        processed_items = processed_items + ?,
                        failed_items = failed_items + ?
                    WHERE id = ?
                    """,
                    (cancelled, cancelled, job_id),
                )
            await self._conn.commit()
        never_attempted = int(row[1]) if row else 0
        return cancelled, min(never_attempted, cancelled)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get(self, entry_id: str) -> QueueEntry:
        """Return the entry with *entry_id*.

        Raises:
            EntryNotFoundError: If no such entry exists.
        """
        cursor = await self._conn.execute(
            "SELECT * FROM queue_entries WHERE id = ?", (entry_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise EntryNotFoundError(entry_id)
        return _row_to_entry(row)

    async def list_for_job(self, job_id: str) -> list[QueueEntry]:
        """Return every entry of *job_id* in insertion order."""
        cursor = await self._conn.execute(
            "SELECT * FROM queue_entries WHERE job_id = ? ORDER BY seq", (job_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def processing_entries(self) -> list[QueueEntry]:
        """Entries currently executing, in any process sharing the database; oldest first."""
        cursor = await self._conn.execute(
            "SELECT * FROM queue_entries WHERE status = ? ORDER BY started_at, seq",
            (str(EntryStatus.PROCESSING),),
        )
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def status_counts(self, job_id: str | None = None) -> dict[str, int]:
        """Return entry counts keyed by status (every status present, zero-filled)."""
        counts = {str(status): 0 for status in EntryStatus}
        if job_id is None:
            cursor = await self._conn.execute(
                "SELECT status, COUNT(*) FROM queue_entries GROUP BY status"
            )
        else:
            cursor = await self._conn.execute(
                "SELECT status, COUNT(*) FROM queue_entries WHERE job_id = ? GROUP BY status",
                (job_id,),
            )
        for row in await cursor.fetchall():
            counts[row[0]] = row[1]
        return counts
