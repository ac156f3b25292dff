"""Test doubles shared across the suite: a manual clock and a scriptable engine."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from jobrota.core.models import Account, ExecutionOutcome, Job
from jobrota.execution.base import ExecutionEngine

#: Monday noon UTC; far enough from midnight that daily counters never roll over.
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

AddAccount = Callable[..., Awaitable[Account]]
AddJob = Callable[..., Awaitable[Job]]


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class ScriptedEngine(ExecutionEngine):
    """Execution engine whose behaviour is scripted per work item.

    Args:
        script: Work item → outcome, exception instance, or list of those
            (consumed one per attempt).  Unscripted items succeed with the
            work item echoed as payload.
        delay: Seconds every execution sleeps before answering.
    """

    def __init__(self, script: dict[Any, Any] | None = None, delay: float = 0.0) -> None:
        self.script = dict(script or {})
        self.delay = delay
        self.calls: list[tuple[str, str, Any]] = []
        self.running = 0
        self.max_running = 0
        self.gate = asyncio.Event()
        self.gate.set()

    async def execute(self, job: Job, account: Account, work_item: Any) -> ExecutionOutcome:
        self.calls.append((job.id, account.id, work_item))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            planned = self.script.get(work_item)
            if isinstance(planned, list):
                planned = planned.pop(0) if planned else None
            if isinstance(planned, BaseException):
                raise planned
            if isinstance(planned, ExecutionOutcome):
                return planned
            return ExecutionOutcome.ok({"item": work_item})
        finally:
            self.running -= 1


async def wait_until(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
    """Poll *predicate* until it is true; fail the test after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)
