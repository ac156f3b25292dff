"""Data-access objects for accounts, jobs, and usage records.

Each repository wraps one table and owns no connection lifecycle: the caller
supplies an open :class:`aiosqlite.Connection` (see
:func:`~jobrota.storage.database.open_db`) and closes it when done.

Every write is a **single** SQL statement, so a row is never observed in a
half-updated state even when several scheduler processes share the file.

Typical usage::

    from jobrota.storage.database import open_db
    from jobrota.storage.repository import AccountRepository

    async def run() -> None:
        conn = await open_db()
        accounts = AccountRepository(conn)
        await accounts.insert(Account(id="acc-1", tenant_id="t-1"))
        pool = await accounts.list_for_tenant("t-1")
        await conn.close()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import aiosqlite

from jobrota.core.clock import Clock, format_ts, parse_ts, utc_now
from jobrota.core.exceptions import AccountNotFoundError, JobNotFoundError
from jobrota.core.models import (
    Account,
    ErrorClass,
    Job,
    JobConfig,
    JobStatus,
    UsageRecord,
    ValidationState,
)

__all__ = [
    "AccountRepository",
    "JobRepository",
    "UsageRepository",
]

logger = logging.getLogger(__name__)

#: Account columns the ledger may overwrite through :meth:`AccountRepository.update`.
_ACCOUNT_MUTABLE_COLUMNS: frozenset[str] = frozenset(
    {
        "label",
        "is_active",
        "validation_state",
        "daily_limit",
        "requests_today",
        "last_request_at",
        "min_delay_seconds",
        "consecutive_failures",
        "cooldown_until",
        "blocked_until",
        "session_credential",
    }
)


# ---------------------------------------------------------------------------
# Row conversion helpers
# ---------------------------------------------------------------------------


def _to_db(value: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_account(row: aiosqlite.Row) -> Account:
    return Account(
        id=row["id"],
        tenant_id=row["tenant_id"],
        label=row["label"],
        is_active=bool(row["is_active"]),
        validation_state=ValidationState(row["validation_state"]),
        daily_limit=row["daily_limit"],
        requests_today=row["requests_today"],
        last_request_at=parse_ts(row["last_request_at"]),
        min_delay_seconds=row["min_delay_seconds"],
        consecutive_failures=row["consecutive_failures"],
        cooldown_until=parse_ts(row["cooldown_until"]),
        blocked_until=parse_ts(row["blocked_until"]),
        session_credential=row["session_credential"],
        created_at=parse_ts(row["created_at"]),
    )


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        total_items=row["total_items"],
        processed_items=row["processed_items"],
        successful_items=row["successful_items"],
        failed_items=row["failed_items"],
        config=JobConfig.model_validate_json(row["config_json"]),
        credits_reserved=row["credits_reserved"],
        credits_refunded=row["credits_refunded"],
        created_at=parse_ts(row["created_at"]),
        started_at=parse_ts(row["started_at"]),
        completed_at=parse_ts(row["completed_at"]),
    )


def _row_to_usage(row: aiosqlite.Row) -> UsageRecord:
    return UsageRecord(
        account_id=row["account_id"],
        job_id=row["job_id"],
        entry_id=row["entry_id"],
        success=bool(row["success"]),
        latency_ms=row["latency_ms"],
        error_class=ErrorClass(row["error_class"]) if row["error_class"] else None,
        created_at=parse_ts(row["created_at"]),
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountRepository:
    """Data-access object for the ``accounts`` table.

    Reads are open to everyone; writes are meant to be issued by
    :class:`~jobrota.accounts.ledger.AccountLedger` only, which serialises
    them per account.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
        clock: Source of "now" for ``created_at`` stamps.
    """

    def __init__(self, conn: aiosqlite.Connection, *, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def find(self, account_id: str) -> Account | None:
        """Return the account with *account_id*, or ``None`` if unknown."""
        cursor = await self._conn.execute(
            "SELECT * FROM accounts WHERE id = ?",
            (account_id,),
        )
        row = await cursor.fetchone()
        return _row_to_account(row) if row is not None else None

    async def get(self, account_id: str) -> Account:
        """Return the account with *account_id*.

        Raises:
            AccountNotFoundError: If no such account exists.
        """
        account = await self.find(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        include_inactive: bool = True,
    ) -> list[Account]:
        """Return every account owned by *tenant_id*, ordered by id.

        Args:
            tenant_id: Owning tenant.
            include_inactive: When ``False``, soft-disabled accounts are
                omitted.
        """
        sql = "SELECT * FROM accounts WHERE tenant_id = ?"
        if not include_inactive:
            sql += " AND is_active = 1"
        cursor = await self._conn.execute(sql + " ORDER BY id", (tenant_id,))
        rows = await cursor.fetchall()
        return [_row_to_account(row) for row in rows]

    async def owned_by(self, tenant_id: str, account_ids: Iterable[str]) -> set[str]:
        """Return the subset of *account_ids* that belong to *tenant_id*."""
        ids = list(account_ids)
        if not ids:
            return set()
        placeholders = ",".join("?" * len(ids))
        cursor = await self._conn.execute(
            f"SELECT id FROM accounts WHERE tenant_id = ? AND id IN ({placeholders})",
            (tenant_id, *ids),
        )
        rows = await cursor.fetchall()
        return {row[0] for row in rows}

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------

    async def insert(self, account: Account) -> Account:
        """Persist a newly onboarded account and return it as stored."""
        stored = account.model_copy(
            update={"created_at": account.created_at or self._clock()}
        )
        await self._conn.execute(
            """
            INSERT INTO accounts
                (id, tenant_id, label, is_active, validation_state, daily_limit,
                 requests_today, last_request_at, min_delay_seconds,
                 consecutive_failures, cooldown_until, blocked_until,
                 session_credential, created_at)
            VALUES
                (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.tenant_id,
                stored.label,
                int(stored.is_active),
                str(stored.validation_state),
                stored.daily_limit,
                stored.requests_today,
                format_ts(stored.last_request_at),
                stored.min_delay_seconds,
                stored.consecutive_failures,
                format_ts(stored.cooldown_until),
                format_ts(stored.blocked_until),
                stored.session_credential,
                format_ts(stored.created_at),
            ),
        )
        await self._conn.commit()
        logger.debug("Inserted account %s (tenant=%s)", stored.id, stored.tenant_id)
        return stored

    async def update(self, account_id: str, **fields: Any) -> None:
        """Overwrite the given columns of one account in a single statement.

        Args:
            account_id: Account to update.
            **fields: Column name → new value.  Datetimes and booleans are
                converted to their storage form.

        Raises:
            ValueError: If a column is not updatable.
            AccountNotFoundError: If no such account exists.
        """
        unknown = set(fields) - _ACCOUNT_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update account column(s): {sorted(unknown)}")
        if not fields:
            return

        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = await self._conn.execute(
            f"UPDATE accounts SET {assignments} WHERE id = ?",
            (*(_to_db(value) for value in fields.values()), account_id),
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            raise AccountNotFoundError(account_id)

    async def increment_requests(self, account_id: str, now: datetime) -> None:
        """Count one dispatch: bump ``requests_today`` and stamp the request time.

        The counter restarts at 1 when the previous request happened on an
        earlier UTC calendar day.  Expressed as one ``UPDATE`` so concurrent
        dispatches on the same account are never lost.

        Raises:
            AccountNotFoundError: If no such account exists.
        """
        stamp = format_ts(now)
        assert stamp is not None  # noqa: S101
        cursor = await self._conn.execute(
            """
            UPDATE accounts SET
                requests_today = CASE
                    WHEN last_request_at IS NOT NULL AND substr(last_request_at, 1, 10) = ?
                    THEN requests_today + 1
                    ELSE 1
                END,
                last_request_at = ?
            WHERE id = ?
            """,
            (stamp[:10], stamp, account_id),
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            raise AccountNotFoundError(account_id)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobRepository:
    """Data-access object for the ``jobs`` table.

    Counter updates and job closure on entry finalisation are issued by
    :class:`~jobrota.storage.queue.QueueStore`; this class covers creation,
    lookup, and explicit status commands.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
        clock: Source of "now" for lifecycle timestamps.
    """

    def __init__(self, conn: aiosqlite.Connection, *, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    async def insert(self, job: Job) -> Job:
        """Persist a new job and return it as stored."""
        stored = job.model_copy(update={"created_at": job.created_at or self._clock()})
        await self._conn.execute(
            """
            INSERT INTO jobs
                (id, tenant_id, name, job_type, status, total_items,
                 processed_items, successful_items, failed_items, config_json,
                 credits_reserved, credits_refunded, created_at, started_at,
                 completed_at)
            VALUES
                (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.tenant_id,
                stored.name,
                str(stored.job_type),
                str(stored.status),
                stored.total_items,
                stored.processed_items,
                stored.successful_items,
                stored.failed_items,
                stored.config.model_dump_json(),
                stored.credits_reserved,
                stored.credits_refunded,
                format_ts(stored.created_at),
                format_ts(stored.started_at),
                format_ts(stored.completed_at),
            ),
        )
        await self._conn.commit()
        logger.debug(
            "Inserted job %s (tenant=%s items=%d)", stored.id, stored.tenant_id, stored.total_items
        )
        return stored

    async def find(self, job_id: str) -> Job | None:
        """Return the job with *job_id*, or ``None`` if unknown."""
        cursor = await self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return _row_to_job(row) if row is not None else None

    async def get(self, job_id: str) -> Job:
        """Return the job with *job_id*.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        job = await self.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        """Return jobs, newest first, optionally filtered by tenant and status."""
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._conn.execute(
            f"SELECT * FROM jobs{where} ORDER BY created_at DESC, id", params
        )
        rows = await cursor.fetchall()
        return [_row_to_job(row) for row in rows]

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        allowed_from: Iterable[JobStatus],
    ) -> bool:
        """Move a job to *target* if it currently sits in one of *allowed_from*.

        ``started_at`` is stamped the first time a job becomes running and
        ``completed_at`` when it reaches a terminal status.

        Returns:
            ``True`` if the row changed, ``False`` if the job was in another
            status (or does not exist).
        """
        sources = [str(status) for status in allowed_from]
        if not sources:
            return False
        now = format_ts(self._clock())
        placeholders = ",".join("?" * len(sources))
        cursor = await self._conn.execute(
            f"""
            UPDATE jobs SET
                status = ?,
                started_at = CASE WHEN ? THEN COALESCE(started_at, ?) ELSE started_at END,
                completed_at = CASE WHEN ? THEN ? ELSE completed_at END
            WHERE id = ? AND status IN ({placeholders})
            """,
            (
                str(target),
                int(target is JobStatus.RUNNING),
                now,
                int(target.is_terminal),
                now,
                job_id,
                *sources,
            ),
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def delete(self, job_id: str) -> bool:
        """Remove a job that has no queue entries (an aborted creation).

        Returns:
            ``True`` if a row was deleted.
        """
        cursor = await self._conn.execute(
            """
            DELETE FROM jobs
            WHERE id = ? AND NOT EXISTS (SELECT 1 FROM queue_entries WHERE job_id = ?)
            """,
            (job_id, job_id),
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def add_refund(self, job_id: str, amount: int) -> None:
        """Record *amount* credits as refunded for *job_id*."""
        await self._conn.execute(
            "UPDATE jobs SET credits_refunded = credits_refunded + ? WHERE id = ?",
            (amount, job_id),
        )
        await self._conn.commit()


# ---------------------------------------------------------------------------
# Usage records
# ---------------------------------------------------------------------------


class UsageRepository:
    """Append-only access to the ``usage_records`` table."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append(self, record: UsageRecord) -> None:
        """Persist one execution attempt."""
        await self._conn.execute(
            """
            INSERT INTO usage_records
                (account_id, job_id, entry_id, success, latency_ms, error_class, created_at)
            VALUES
                (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.account_id,
                record.job_id,
                record.entry_id,
                int(record.success),
                record.latency_ms,
                str(record.error_class) if record.error_class else None,
                format_ts(record.created_at),
            ),
        )
        await self._conn.commit()

    async def count_since(self, account_id: str, since: datetime) -> int:
        """Return how many attempts *account_id* made after *since*."""
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM usage_records WHERE account_id = ? AND created_at > ?",
            (account_id, format_ts(since)),
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def nth_since(self, account_id: str, since: datetime, offset: int = 0) -> datetime | None:
        """Return when the (*offset* + 1)-th oldest attempt after *since* was made."""
        cursor = await self._conn.execute(
            """
            SELECT created_at FROM usage_records
            WHERE account_id = ? AND created_at > ?
            ORDER BY created_at ASC, id ASC
            LIMIT 1 OFFSET ?
            """,
            (account_id, format_ts(since), offset),
        )
        row = await cursor.fetchone()
        return parse_ts(row[0]) if row else None

    async def recent(self, account_id: str, limit: int = 50) -> list[UsageRecord]:
        """Return the latest *limit* attempts of *account_id*, newest first."""
        cursor = await self._conn.execute(
            "SELECT * FROM usage_records WHERE account_id = ? ORDER BY id DESC LIMIT ?",
            (account_id, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_usage(row) for row in rows]
