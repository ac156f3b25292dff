"""Shared pytest fixtures and configuration for the Jobrota test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures: logging, a clean environment, a manual
clock, an in-memory database with every repository wired to it, and a
scriptable execution engine.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio
from pydantic_settings import SettingsConfigDict

from jobrota.accounts.escalation import FailureEscalationPolicy
from jobrota.accounts.ledger import AccountLedger
from jobrota.accounts.selector import AccountSelector
from jobrota.core import configure_logging
from jobrota.core.models import (
    Account,
    Job,
    JobConfig,
    JobType,
    SelectionStrategy,
)
from jobrota.core.settings import Settings
from jobrota.storage.activity import ActivityLog
from jobrota.storage.database import IN_MEMORY, open_db
from jobrota.storage.queue import QueueStore
from jobrota.storage.repository import AccountRepository, JobRepository, UsageRepository
from tests.helpers import AddAccount, AddJob, ManualClock, ScriptedEngine

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test."""
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove all Jobrota-related env vars and disable ``.env`` loading."""
    prefixes = (
        "DATABASE_",
        "MAX_CONCURRENT_",
        "EXECUTION_",
        "POLL_",
        "STALE_",
        "CLAIM_",
        "FAILURE_",
        "COOLDOWN_",
        "RATE_LIMIT_",
        "AUTH_",
        "DEFAULT_",
        "RETRY_",
        "MIN_HEALTH",
        "ENFORCE_",
        "CREDIT",
        "STATS_",
        "HEARTBEAT_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


@pytest.fixture()
def settings(clean_env: None) -> Settings:
    """Settings with defaults only (no env, no ``.env``)."""
    return Settings()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def conn() -> AsyncIterator[aiosqlite.Connection]:
    connection = await open_db(IN_MEMORY)
    try:
        yield connection
    finally:
        await connection.close()


@pytest.fixture()
def accounts(conn: aiosqlite.Connection, clock: ManualClock) -> AccountRepository:
    return AccountRepository(conn, clock=clock)


@pytest.fixture()
def jobs(conn: aiosqlite.Connection, clock: ManualClock) -> JobRepository:
    return JobRepository(conn, clock=clock)


@pytest.fixture()
def usage(conn: aiosqlite.Connection) -> UsageRepository:
    return UsageRepository(conn)


@pytest.fixture()
def activity(conn: aiosqlite.Connection, clock: ManualClock) -> ActivityLog:
    return ActivityLog(conn, clock=clock)


@pytest.fixture()
def queue(conn: aiosqlite.Connection, clock: ManualClock) -> QueueStore:
    return QueueStore(conn, clock=clock)


@pytest.fixture()
def ledger(
    accounts: AccountRepository,
    usage: UsageRepository,
    activity: ActivityLog,
    clock: ManualClock,
) -> AccountLedger:
    return AccountLedger(
        accounts, usage, FailureEscalationPolicy(), activity=activity, clock=clock
    )


@pytest.fixture()
def selector(
    accounts: AccountRepository,
    ledger: AccountLedger,
    clock: ManualClock,
) -> AccountSelector:
    return AccountSelector(accounts, ledger, clock=clock)


@pytest.fixture()
def add_account(accounts: AccountRepository) -> AddAccount:
    """Insert an account with test-friendly defaults (valid JSON credential)."""

    async def _add(account_id: str, tenant_id: str = "t-1", **fields: Any) -> Account:
        fields.setdefault("session_credential", '{"cookie": "abc"}')
        return await accounts.insert(Account(id=account_id, tenant_id=tenant_id, **fields))

    return _add


@pytest.fixture()
def add_job(jobs: JobRepository) -> AddJob:
    """Insert a pending job; entries are enqueued separately."""
    counter = iter(range(1, 10_000))

    async def _add(
        tenant_id: str = "t-1",
        *,
        total_items: int = 1,
        job_type: JobType = JobType.PROFILE,
        max_retries: int = 3,
        strategy: SelectionStrategy = SelectionStrategy.BALANCED,
    ) -> Job:
        return await jobs.insert(
            Job(
                id=f"job-{next(counter)}",
                tenant_id=tenant_id,
                job_type=job_type,
                total_items=total_items,
                config=JobConfig(max_retries=max_retries, strategy=strategy),
            )
        )

    return _add


# ---------------------------------------------------------------------------
# Execution engine
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine() -> ScriptedEngine:
    return ScriptedEngine()


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
