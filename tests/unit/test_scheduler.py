"""Unit tests for SchedulerLoop: tick dispatch, deferral, stale recovery, and the run loop."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

import aiosqlite
import pytest

from jobrota.accounts.ledger import AccountLedger
from jobrota.accounts.selector import AccountSelector
from jobrota.core import events
from jobrota.core.exceptions import SchedulerError
from jobrota.core.models import (
    Account,
    EntryStatus,
    ExecutionOutcome,
    Job,
    JobStatus,
    JobType,
)
from jobrota.core.settings import Settings
from jobrota.execution.base import ExecutionEngine
from jobrota.orchestrator.engine import SchedulingEngine
from jobrota.orchestrator.scheduler import SchedulerLoop
from jobrota.orchestrator.worker_pool import WorkerPool
from jobrota.storage.activity import ActivityLog
from jobrota.storage.queue import QueueStore
from jobrota.storage.repository import AccountRepository, JobRepository
from tests.helpers import T0, AddAccount, AddJob, ManualClock, ScriptedEngine, wait_until

MakeLoop = Callable[..., tuple[SchedulerLoop, WorkerPool]]


@pytest.fixture()
def make_loop(
    queue: QueueStore,
    jobs: JobRepository,
    accounts: AccountRepository,
    ledger: AccountLedger,
    selector: AccountSelector,
    activity: ActivityLog,
    clock: ManualClock,
) -> MakeLoop:
    """Build a scheduler loop and its worker pool around *engine*."""

    def _make(engine: ExecutionEngine, *, capacity: int = 5, **kwargs: Any) -> tuple[
        SchedulerLoop, WorkerPool
    ]:
        pool = WorkerPool(
            queue,
            ledger,
            engine,
            max_concurrent_workers=capacity,
            execution_timeout=5.0,
            clock=clock,
        )
        loop = SchedulerLoop(
            queue,
            jobs,
            accounts,
            ledger,
            selector,
            pool,
            clock=clock,
            activity=activity,
            name="test",
            **kwargs,
        )
        return loop, pool

    return _make


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------


class TestTick:
    async def test_dispatches_tenant_pool_entries(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        jobs: JobRepository,
        activity: ActivityLog,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1")
        await add_account("acc-2")
        job = await add_job(total_items=3)
        await queue.enqueue(job, ["a", "b", "c"])
        loop, pool = make_loop(engine)

        stats = await loop.tick()
        assert (stats.claimed, stats.dispatched, stats.deferred) == (3, 3, 0)
        assert not stats.pool_full
        await pool.drain(timeout=5)

        assert (await jobs.get(job.id)).status is JobStatus.COMPLETED
        assert {account_id for _, account_id, _ in engine.calls} <= {"acc-1", "acc-2"}
        assert events.JOB_STARTED in [row["event"] for row in await activity.recent()]
        assert loop.stats.total_dispatched == 3

    async def test_worker_ids_carry_scheduler_name(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1")
        job = await add_job()
        await queue.enqueue(job, ["a"])
        loop, pool = make_loop(engine)
        engine.gate.clear()

        await loop.tick()
        [worker] = pool.workers()
        assert worker.worker_id.startswith("test-w")
        engine.gate.set()
        await pool.drain(timeout=5)

    async def test_stops_when_pool_is_full(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1")
        job = await add_job(total_items=3)
        await queue.enqueue(job, ["a", "b", "c"])
        loop, pool = make_loop(engine, capacity=1)
        engine.gate.clear()

        stats = await loop.tick()
        assert stats.dispatched == 1
        assert stats.pool_full
        counts = await queue.status_counts(job.id)
        assert counts["queued"] == 2
        assert counts["processing"] == 1

        engine.gate.set()
        await pool.drain(timeout=5)

    async def test_paused_job_is_not_dispatched(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        jobs: JobRepository,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1")
        job = await add_job()
        await queue.enqueue(job, ["a"])
        await jobs.transition(job.id, JobStatus.PAUSED, allowed_from=(JobStatus.PENDING,))
        loop, _ = make_loop(engine)

        stats = await loop.tick()
        assert stats.claimed == 0
        assert engine.calls == []

    async def test_bound_account_is_used_when_eligible(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1")
        await add_account("acc-2")
        job = await add_job(total_items=2)
        await queue.enqueue(job, ["a", "b"], ["acc-2"])
        loop, pool = make_loop(engine)

        await loop.tick()
        await pool.drain(timeout=5)
        assert [account_id for _, account_id, _ in engine.calls] == ["acc-2", "acc-2"]

    async def test_unavailable_bound_account_falls_back_to_pool(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1", blocked_until=T0 + timedelta(hours=1))
        await add_account("acc-2")
        job = await add_job()
        await queue.enqueue(job, ["a"], ["acc-1"])
        loop, pool = make_loop(engine)

        await loop.tick()
        await pool.drain(timeout=5)
        assert [account_id for _, account_id, _ in engine.calls] == ["acc-2"]


# ---------------------------------------------------------------------------
# Deferral
# ---------------------------------------------------------------------------


class TestDeferral:
    async def test_exhausted_pool_defers_remaining_entries(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        jobs: JobRepository,
        activity: ActivityLog,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1", daily_limit=2)
        job = await add_job(total_items=4)
        await queue.enqueue(job, ["a", "b", "c", "d"])
        loop, pool = make_loop(engine)

        stats = await loop.tick()
        await pool.drain(timeout=5)
        assert (stats.claimed, stats.dispatched, stats.deferred) == (3, 2, 1)

        entries = await queue.list_for_job(job.id)
        assert [e.status for e in entries] == [
            EntryStatus.COMPLETED,
            EntryStatus.COMPLETED,
            EntryStatus.QUEUED,
            EntryStatus.QUEUED,
        ]
        # Daily reset is 12h away: beyond the horizon, so the full horizon applies.
        assert {e.available_at for e in entries[2:]} == {T0 + timedelta(hours=1)}
        assert all(e.retry_count == 0 for e in entries[2:])
        assert (await jobs.get(job.id)).status is JobStatus.RUNNING
        assert events.ENTRY_DEFERRED in [row["event"] for row in await activity.recent()]

        # The next tick finds nothing claimable.
        again = await loop.tick()
        assert again.claimed == 0

    async def test_deferral_uses_retry_after(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
        clock: ManualClock,
    ) -> None:
        await add_account("acc-1", blocked_until=T0 + timedelta(minutes=20))
        job = await add_job()
        await queue.enqueue(job, ["a"])
        loop, pool = make_loop(engine)

        stats = await loop.tick()
        assert stats.deferred == 1
        [entry] = await queue.list_for_job(job.id)
        assert entry.available_at == T0 + timedelta(minutes=20)

        clock.advance(minutes=20, seconds=1)
        stats = await loop.tick()
        assert stats.dispatched == 1
        await pool.drain(timeout=5)
        assert engine.calls == [(job.id, "acc-1", "a")]

    async def test_other_job_types_are_still_dispatched(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        # MESSAGING scales the limit of 3 down to 0; PROFILE keeps all 3.
        await add_account("acc-1", daily_limit=3)
        messaging = await add_job(job_type=JobType.MESSAGING)
        profile = await add_job(job_type=JobType.PROFILE)
        await queue.enqueue(messaging, ["m"])
        await queue.enqueue(profile, ["p"])
        loop, pool = make_loop(engine)

        stats = await loop.tick()
        await pool.drain(timeout=5)
        assert (stats.deferred, stats.dispatched) == (1, 1)
        assert [item for _, _, item in engine.calls] == ["p"]


# ---------------------------------------------------------------------------
# Stale recovery
# ---------------------------------------------------------------------------


class TestStaleRecovery:
    async def test_orphaned_entry_is_requeued_and_dispatched(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
        clock: ManualClock,
    ) -> None:
        await add_account("acc-1")
        job = await add_job()
        await queue.enqueue(job, ["a"])
        orphan = await queue.claim_next("crashed-worker")
        assert orphan is not None
        await queue.mark_processing(orphan.id, "crashed-worker", "acc-1")

        loop, pool = make_loop(engine, stale_after=timedelta(seconds=240))
        assert (await loop.tick()).requeued_stale == 0

        clock.advance(minutes=5)
        stats = await loop.tick()
        assert stats.requeued_stale == 1
        assert stats.dispatched == 1
        await pool.drain(timeout=5)
        stored = await queue.get(orphan.id)
        assert stored.status is EntryStatus.COMPLETED
        assert stored.retry_count == 0

    async def test_own_running_entries_are_not_requeued(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        add_account: AddAccount,
        add_job: AddJob,
        clock: ManualClock,
    ) -> None:
        await add_account("acc-1")
        job = await add_job()
        await queue.enqueue(job, ["a"])
        loop, pool = make_loop(engine, stale_after=timedelta(seconds=240))
        engine.gate.clear()
        await loop.tick()

        clock.advance(minutes=10)
        assert (await loop.tick()).requeued_stale == 0
        engine.gate.set()
        await pool.drain(timeout=5)


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


class TestRunLoop:
    async def test_runs_until_stopped(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        jobs: JobRepository,
        add_account: AddAccount,
        add_job: AddJob,
        tmp_path: Path,
    ) -> None:
        stats_path = tmp_path / "stats.json"
        heartbeat_path = tmp_path / "heartbeat"
        await add_account("acc-1")
        job = await add_job(total_items=3)
        await queue.enqueue(job, ["a", "b", "c"])
        loop, pool = make_loop(
            engine,
            poll_interval=0.02,
            stats_path=str(stats_path),
            heartbeat_path=str(heartbeat_path),
        )

        loop.start()
        assert loop.running
        with pytest.raises(SchedulerError):
            loop.start()

        async def _done() -> bool:
            return (await jobs.get(job.id)).status is JobStatus.COMPLETED

        await wait_until(_done)
        await loop.stop()
        assert not loop.running
        await pool.drain(timeout=5)

        snapshot = json.loads(stats_path.read_text())
        assert snapshot["total_dispatched"] == 3
        assert set(snapshot["executions"]) >= {"dispatched", "completed"}
        assert float(heartbeat_path.read_text()) > 0

    async def test_tick_errors_are_survived(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        loop, _ = make_loop(engine, poll_interval=0.01)
        original = queue.requeue_stale
        calls = {"n": 0}

        async def _flaky(*args: Any, **kwargs: Any) -> int:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("database hiccup")
            return await original(*args, **kwargs)

        monkeypatch.setattr(queue, "requeue_stale", _flaky)
        loop.start()

        async def _recovered() -> bool:
            return loop.stats.ticks_run >= 3

        await wait_until(_recovered)
        await loop.stop()
        assert loop.stats.failed_ticks == 1

    async def test_wake_triggers_immediate_tick(
        self,
        make_loop: MakeLoop,
        engine: ScriptedEngine,
        queue: QueueStore,
        jobs: JobRepository,
        add_account: AddAccount,
        add_job: AddJob,
    ) -> None:
        await add_account("acc-1")
        loop, pool = make_loop(engine, poll_interval=60.0)
        loop.start()

        async def _idle() -> bool:
            return loop.stats.ticks_run >= 1

        await wait_until(_idle)
        job = await add_job()
        await queue.enqueue(job, ["a"])
        loop.wake()

        async def _done() -> bool:
            return (await jobs.get(job.id)).status is JobStatus.COMPLETED

        await wait_until(_done, timeout=2.0)
        await loop.stop()
        await pool.drain(timeout=5)

    def test_invalid_poll_interval(self, make_loop: MakeLoop, engine: ScriptedEngine) -> None:
        with pytest.raises(ValueError, match="poll_interval"):
            make_loop(engine, poll_interval=0)


# ---------------------------------------------------------------------------
# Saturation through the engine wiring
# ---------------------------------------------------------------------------


class _HeldEngine(ExecutionEngine):
    """Holds each execution until its work item is released."""

    def __init__(self) -> None:
        self.started: list[Any] = []
        self._gates: defaultdict[Any, asyncio.Event] = defaultdict(asyncio.Event)

    async def execute(self, job: Job, account: Account, work_item: Any) -> ExecutionOutcome:
        self.started.append(work_item)
        await self._gates[work_item].wait()
        return ExecutionOutcome.ok()

    def release(self, *items: Any) -> None:
        for item in items:
            self._gates[item].set()


class TestSaturation:
    async def test_freed_slot_is_refilled_without_waiting_for_poll(
        self,
        conn: aiosqlite.Connection,
        settings: Settings,
        clock: ManualClock,
    ) -> None:
        held = _HeldEngine()
        configured = settings.model_copy(
            update={"max_concurrent_workers": 2, "poll_interval_seconds": 60.0}
        )
        sched = SchedulingEngine(conn, held, configured, clock=clock)
        await sched.add_tenant("t-1", credits=5)
        await sched.add_account(Account(id="acc-1", tenant_id="t-1"))
        job = await sched.create_job("t-1", [f"item-{i}" for i in range(5)])

        async def _counts() -> dict[str, int]:
            return await sched.queue.status_counts(job.id)

        await sched.start()
        try:

            async def _saturated() -> bool:
                return (await _counts())["processing"] == 2

            await wait_until(_saturated)
            counts = await _counts()
            assert (counts["processing"], counts["queued"]) == (2, 3)
            assert held.started == ["item-0", "item-1"]
            assert sched.pool.active_count == 2

            held.release("item-0")

            async def _third_dispatched() -> bool:
                return len(held.started) == 3

            await wait_until(_third_dispatched, timeout=2.0)
            counts = await _counts()
            assert (counts["completed"], counts["processing"], counts["queued"]) == (1, 2, 2)
            assert held.started[2] == "item-2"

            held.release(*(f"item-{i}" for i in range(5)))

            async def _done() -> bool:
                return (await sched.get_job(job.id)).status is JobStatus.COMPLETED

            await wait_until(_done, timeout=2.0)
        finally:
            await sched.stop(grace=2)
