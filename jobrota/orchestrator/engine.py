"""Scheduling engine facade: wiring plus the administrative surface.

:class:`SchedulingEngine` owns one instance of every component and wires
them together over a single database connection:

* :class:`~jobrota.storage.queue.QueueStore` — durable queue.
* :class:`~jobrota.accounts.ledger.AccountLedger` with a
  :class:`~jobrota.accounts.escalation.FailureEscalationPolicy`.
* :class:`~jobrota.accounts.selector.AccountSelector`.
* :class:`~jobrota.orchestrator.worker_pool.WorkerPool` around the injected
  :class:`~jobrota.execution.base.ExecutionEngine`.
* :class:`~jobrota.orchestrator.scheduler.SchedulerLoop`.
* :class:`~jobrota.billing.credits.CreditLedger` (SQLite by default).

Tenants interact only through jobs: :meth:`SchedulingEngine.create_job`,
:meth:`~SchedulingEngine.pause_job`, :meth:`~SchedulingEngine.resume_job`,
:meth:`~SchedulingEngine.cancel_job` and the read helpers.  Account
failures never surface here; they are absorbed by the escalation policy and
only visible through job counters.

Typical usage::

    conn = await open_db("data/jobrota.db")
    async with SchedulingEngine(conn, MyEngine(), settings) as engine:
        await engine.add_tenant("t-1", credits=1_000)
        await engine.add_account(Account(id="acc-1", tenant_id="t-1"))
        job = await engine.create_job("t-1", ["https://example.com/a"])
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from types import TracebackType
from typing import Any

import aiosqlite
from pydantic import ValidationError

from jobrota.accounts.escalation import FailureEscalationPolicy
from jobrota.accounts.ledger import AccountLedger, RotationStats
from jobrota.accounts.selector import AccountSelector
from jobrota.billing.credits import CreditLedger, SQLiteCreditLedger
from jobrota.core import events
from jobrota.core.clock import Clock, utc_now
from jobrota.core.exceptions import (
    InsufficientCreditsError,
    InvalidTransitionError,
    JobCreationError,
)
from jobrota.core.models import (
    Account,
    CreditRefundPolicy,
    Job,
    JobConfig,
    JobStatus,
    JobType,
    QueueEntry,
    QueueStatus,
    SelectionStrategy,
    ValidationState,
    WorkerInfo,
)
from jobrota.core.settings import Settings
from jobrota.execution.base import ExecutionEngine
from jobrota.orchestrator.scheduler import SchedulerLoop
from jobrota.orchestrator.worker_pool import WorkerPool
from jobrota.storage.activity import ActivityLog
from jobrota.storage.queue import FinalizeResult, QueueStore
from jobrota.storage.repository import AccountRepository, JobRepository, UsageRepository

__all__ = ["SchedulingEngine"]

logger = logging.getLogger(__name__)

_PAUSABLE = (JobStatus.PENDING, JobStatus.RUNNING)
_CANCELLABLE = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


class SchedulingEngine:
    """Job scheduling and account rotation engine.

    Args:
        conn: Open, configured database connection (see
            :func:`~jobrota.storage.database.open_db`).
        execution_engine: Performs the actual work items.
        settings: Application settings.  Loaded from the environment if
            ``None``.
        clock: Source of "now", shared by every component.
        credits: Credit store.  Defaults to the ``tenants`` table of *conn*.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        execution_engine: ExecutionEngine,
        settings: Settings | None = None,
        *,
        clock: Clock = utc_now,
        credits: CreditLedger | None = None,
    ) -> None:
        self._settings = settings if settings is not None else Settings()
        self._clock = clock
        s = self._settings

        self._accounts = AccountRepository(conn, clock=clock)
        self._jobs = JobRepository(conn, clock=clock)
        self._activity = ActivityLog(conn, clock=clock)
        self._credits = credits or SQLiteCreditLedger(conn, clock=clock)
        self._queue = QueueStore(conn, clock=clock, claim_scan_limit=s.claim_scan_limit)
        self._ledger = AccountLedger(
            self._accounts,
            UsageRepository(conn),
            FailureEscalationPolicy.from_settings(s),
            activity=self._activity,
            clock=clock,
            enforce_hourly_limit=s.enforce_hourly_limit,
        )
        self._selector = AccountSelector(
            self._accounts,
            self._ledger,
            clock=clock,
            horizon=s.retry_horizon,
            min_health_score=s.min_health_score,
        )
        self._pool = WorkerPool(
            self._queue,
            self._ledger,
            execution_engine,
            max_concurrent_workers=s.max_concurrent_workers,
            execution_timeout=s.execution_timeout_seconds,
            clock=clock,
            on_slot_freed=self.wake,
            on_job_closed=self._on_job_closed,
        )
        self._scheduler = SchedulerLoop(
            self._queue,
            self._jobs,
            self._accounts,
            self._ledger,
            self._selector,
            self._pool,
            clock=clock,
            poll_interval=s.poll_interval_seconds,
            stale_after=s.stale_after,
            claim_limit=s.claim_scan_limit,
            retry_horizon=s.retry_horizon,
            activity=self._activity,
            stats_path=s.stats_path,
            heartbeat_path=s.heartbeat_path,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def queue(self) -> QueueStore:
        return self._queue

    @property
    def ledger(self) -> AccountLedger:
        return self._ledger

    @property
    def selector(self) -> AccountSelector:
        return self._selector

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def scheduler(self) -> SchedulerLoop:
        return self._scheduler

    @property
    def credits(self) -> CreditLedger:
        return self._credits

    @property
    def activity(self) -> ActivityLog:
        return self._activity

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduler loop in the background."""
        self._scheduler.start()

    async def stop(self, grace: float | None = None) -> None:
        """Stop claiming new work, then drain the worker pool.

        Args:
            grace: Seconds to wait for in-flight executions before they are
                cancelled.  Defaults to the execution timeout.
        """
        await self._scheduler.stop()
        await self._pool.shutdown(
            grace if grace is not None else self._settings.execution_timeout_seconds
        )

    async def __aenter__(self) -> SchedulingEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def wake(self) -> None:
        """Ask the scheduler to tick as soon as possible."""
        self._scheduler.wake()

    # ------------------------------------------------------------------
    # Tenants and accounts
    # ------------------------------------------------------------------

    async def add_tenant(self, tenant_id: str, name: str = "", credits: int = 0) -> None:
        """Register a tenant with an opening credit balance.

        Only supported with the default SQLite credit store.
        """
        if not isinstance(self._credits, SQLiteCreditLedger):
            raise TypeError("add_tenant requires the SQLite credit ledger")
        await self._credits.add_tenant(tenant_id, name, credits)

    async def add_account(self, account: Account) -> Account:
        """Onboard an account and make the tenant's deferred entries claimable."""
        stored = await self._accounts.insert(account)
        logger.info("Account %s added for tenant %s", stored.display_name, stored.tenant_id)
        await self._pool_changed(stored.tenant_id)
        return stored

    async def set_account_active(self, account_id: str, active: bool) -> None:
        """Soft-enable or soft-disable an account."""
        await self._ledger.set_active(account_id, active)
        if active:
            account = await self._accounts.get(account_id)
            await self._pool_changed(account.tenant_id)

    async def set_account_validation(self, account_id: str, state: ValidationState) -> None:
        """Record a credential validation result for an account."""
        await self._ledger.set_validation_state(account_id, state)
        if state is ValidationState.ACTIVE:
            account = await self._accounts.get(account_id)
            await self._pool_changed(account.tenant_id)

    async def list_accounts(self, tenant_id: str) -> list[Account]:
        return await self._accounts.list_for_tenant(tenant_id)

    async def rotation_stats(self, tenant_id: str) -> RotationStats:
        return await self._ledger.rotation_stats(tenant_id)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        tenant_id: str,
        work_items: Sequence[Any],
        *,
        job_type: JobType = JobType.PROFILE,
        name: str = "",
        candidate_account_ids: Sequence[str] | None = None,
        max_retries: int | None = None,
        strategy: SelectionStrategy | None = None,
        priority: int = 0,
    ) -> Job:
        """Create a job, reserve its credits, and enqueue one entry per work item.

        Args:
            tenant_id: Requesting tenant.
            work_items: JSON-serialisable work item values (at least one).
            job_type: Kind of work; scales the accounts' daily limits.
            name: Optional human-readable name.
            candidate_account_ids: Fan-out mode: bind entries to these
                accounts (round-robin).  Omit for the tenant-pool mode.
            max_retries: Retry budget per entry (settings default if
                ``None``).
            strategy: Account selection strategy (settings default if
                ``None``).
            priority: Lower value is claimed first.

        Returns:
            The stored job in ``pending`` state.

        Raises:
            JobCreationError: If the request is invalid.
            InsufficientCreditsError: If the tenant cannot cover the job.
        """
        items = list(work_items)
        if not items:
            raise JobCreationError("A job needs at least one work item")
        try:
            json.dumps(items)
        except (TypeError, ValueError) as exc:
            raise JobCreationError(f"Work items must be JSON-serialisable: {exc}") from exc
        candidates = list(dict.fromkeys(candidate_account_ids or []))
        if candidates:
            owned = await self._accounts.owned_by(tenant_id, candidates)
            foreign = [account_id for account_id in candidates if account_id not in owned]
            if foreign:
                raise JobCreationError(
                    f"Accounts {foreign} do not belong to tenant {tenant_id!r}"
                )

        try:
            config = JobConfig(
                max_retries=(
                    self._settings.default_max_retries if max_retries is None else max_retries
                ),
                strategy=strategy or self._settings.default_strategy,
            )
        except ValidationError as exc:
            raise JobCreationError(f"Invalid job configuration: {exc}") from exc
        cost = self._settings.credits_per_item * len(items)
        if cost > 0 and not await self._credits.reserve(tenant_id, cost):
            raise InsufficientCreditsError(tenant_id, cost)

        job = Job(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            name=name,
            job_type=job_type,
            total_items=len(items),
            config=config,
            credits_reserved=cost,
            created_at=self._clock(),
        )
        try:
            job = await self._jobs.insert(job)
            await self._queue.enqueue(job, items, candidates or None, priority)
        except Exception:
            await self._jobs.delete(job.id)
            if cost > 0:
                await self._credits.release(tenant_id, cost)
            raise

        await self._activity.record(
            events.JOB_CREATED,
            f"Job {job.id} created: {len(items)} {job_type} item(s), "
            f"{'fan-out over ' + str(len(candidates)) + ' account(s)' if candidates else 'tenant pool'}",
            tenant_id=tenant_id,
            job_id=job.id,
        )
        self.wake()
        return job

    async def get_job(self, job_id: str) -> Job:
        """Raises :class:`~jobrota.core.exceptions.JobNotFoundError` if unknown."""
        return await self._jobs.get(job_id)

    async def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        return await self._jobs.list_jobs(tenant_id=tenant_id, status=status)

    async def list_entries(self, job_id: str) -> list[QueueEntry]:
        await self._jobs.get(job_id)
        return await self._queue.list_for_job(job_id)

    async def pause_job(self, job_id: str) -> Job:
        """Stop claiming entries of a pending or running job.

        In-flight executions finish normally.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is not pending or running.
        """
        job = await self._jobs.get(job_id)
        if not await self._jobs.transition(job_id, JobStatus.PAUSED, allowed_from=_PAUSABLE):
            raise InvalidTransitionError("job", job_id, str(job.status), str(JobStatus.PAUSED))
        await self._activity.record(
            events.JOB_PAUSED, f"Job {job_id} paused", tenant_id=job.tenant_id, job_id=job_id
        )
        return await self._jobs.get(job_id)

    async def resume_job(self, job_id: str) -> Job:
        """Make a paused job's entries claimable again.

        The job returns to ``running`` if it had started, ``pending``
        otherwise.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is not paused.
        """
        job = await self._jobs.get(job_id)
        target = JobStatus.RUNNING if job.started_at is not None else JobStatus.PENDING
        if not await self._jobs.transition(job_id, target, allowed_from=(JobStatus.PAUSED,)):
            raise InvalidTransitionError("job", job_id, str(job.status), str(target))
        await self._activity.record(
            events.JOB_RESUMED, f"Job {job_id} resumed", tenant_id=job.tenant_id, job_id=job_id
        )
        self.wake()
        return await self._jobs.get(job_id)

    async def cancel_job(self, job_id: str) -> Job:
        """Cancel a job that has not finished.

        Queued entries are failed with ``job cancelled``; entries already
        executing finish but are never retried.  Credits of entries that
        were never attempted go back to the tenant.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is already terminal.
        """
        job = await self._jobs.get(job_id)
        if not await self._jobs.transition(job_id, JobStatus.CANCELLED, allowed_from=_CANCELLABLE):
            raise InvalidTransitionError("job", job_id, str(job.status), str(JobStatus.CANCELLED))
        cancelled, never_attempted = await self._queue.cancel_queued(job_id)
        refund = _credits_per_item(job) * never_attempted
        if refund > 0:
            await self._credits.release(job.tenant_id, refund)
            await self._jobs.add_refund(job_id, refund)
        await self._activity.record(
            events.JOB_CANCELLED,
            f"Job {job_id} cancelled ({cancelled} queued entr{'y' if cancelled == 1 else 'ies'} "
            f"dropped, {refund} credit(s) released)",
            tenant_id=job.tenant_id,
            job_id=job_id,
            level=logging.WARNING,
        )
        return await self._jobs.get(job_id)

    # ------------------------------------------------------------------
    # Administrative views
    # ------------------------------------------------------------------

    async def get_queue_status(self, *, from_storage: bool = False) -> QueueStatus:
        """Entry counts by status plus the in-flight executions.

        Args:
            from_storage: Report the ``processing`` entries recorded in the
                database instead of this process's worker pool.  Used by
                admin commands running beside a separate scheduler process.
        """
        counts = await self._queue.status_counts()
        if not from_storage:
            workers = self._pool.workers()
        else:
            workers = [
                WorkerInfo(
                    worker_id=entry.worker_id or "-",
                    entry_id=entry.id,
                    job_id=entry.job_id,
                    tenant_id=entry.tenant_id,
                    account_id=entry.account_id or "-",
                    started_at=entry.started_at or entry.created_at or self._clock(),
                )
                for entry in await self._queue.processing_entries()
            ]
        return QueueStatus(
            counts_by_status=counts,
            active_worker_count=len(workers),
            max_concurrent_workers=self._pool.capacity,
            workers=workers,
        )

    async def recent_activity(
        self,
        *,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        return await self._activity.recent(tenant_id=tenant_id, limit=limit)

    # ------------------------------------------------------------------
    # Internal hooks
    # ------------------------------------------------------------------

    async def _pool_changed(self, tenant_id: str) -> None:
        cleared = await self._queue.clear_deferrals(tenant_id)
        if cleared:
            logger.info("Cleared %d deferral(s) for tenant %s", cleared, tenant_id)
        self.wake()

    async def _on_job_closed(self, result: FinalizeResult) -> None:
        if self._settings.credit_refund_policy is not CreditRefundPolicy.FAILED_ITEMS:
            return
        job = await self._jobs.get(result.job_id)
        refund = _credits_per_item(job) * job.failed_items - job.credits_refunded
        if refund <= 0:
            return
        await self._credits.release(job.tenant_id, refund)
        await self._jobs.add_refund(job.id, refund)
        logger.info("Refunded %d credit(s) for failed items of job %s", refund, job.id)


def _credits_per_item(job: Job) -> int:
    if job.total_items <= 0:
        return 0
    return job.credits_reserved // job.total_items
