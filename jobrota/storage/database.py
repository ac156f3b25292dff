"""SQLite database initialisation for Jobrota.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring low-level PRAGMA settings (WAL journal mode, foreign keys,
  busy timeout).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS`` — safe to
  call on every startup because the statements are idempotent.

Several scheduler processes may share one database file: every cross-caller
state change (claiming a queue entry, reserving credits, closing a job) is a
single conditional ``UPDATE``, and the busy timeout lets a writer wait for a
concurrent one instead of failing immediately.

Typical usage::

    from jobrota.storage.database import open_db

    async def main() -> None:
        conn = await open_db(Path("data/jobrota.db"))
        # ... pass conn to QueueStore / AccountRepository ...
        await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "IN_MEMORY",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("jobrota.db")

#: Special path understood by SQLite as a private in-memory database.
IN_MEMORY: Final[str] = ":memory:"

#: Milliseconds a writer waits on a locked database before failing.
_BUSY_TIMEOUT_MS: Final[int] = 5000

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: ``tenants`` holds the credit balance of each tenant.  ``credits`` is
#: only ever changed through a conditional ``UPDATE`` so it can never go
#: negative.
_DDL_TENANTS = """\
CREATE TABLE IF NOT EXISTS tenants (
    id          TEXT     NOT NULL PRIMARY KEY,
    name        TEXT     NOT NULL DEFAULT '',
    credits     INTEGER  NOT NULL DEFAULT 0 CHECK (credits >= 0),
    created_at  TEXT     NOT NULL
)"""

#: ``accounts`` is mutated only by the account ledger.  Timestamps are
#: ISO-8601 UTC strings with microsecond precision.
_DDL_ACCOUNTS = """\
CREATE TABLE IF NOT EXISTS accounts (
    id                    TEXT     NOT NULL PRIMARY KEY,
    tenant_id             TEXT     NOT NULL,
    label                 TEXT     NOT NULL DEFAULT '',
    is_active             INTEGER  NOT NULL DEFAULT 1,
    validation_state      TEXT     NOT NULL DEFAULT 'ACTIVE',
    daily_limit           INTEGER  NOT NULL DEFAULT 100,
    requests_today        INTEGER  NOT NULL DEFAULT 0,
    last_request_at       TEXT,
    min_delay_seconds     REAL     NOT NULL DEFAULT 0,
    consecutive_failures  INTEGER  NOT NULL DEFAULT 0,
    cooldown_until        TEXT,
    blocked_until         TEXT,
    session_credential    TEXT,
    created_at            TEXT     NOT NULL
)"""

#: ``jobs`` carries the aggregate counters.  ``config_json`` is the
#: serialised :class:`~jobrota.core.models.JobConfig`.
_DDL_JOBS = """\
CREATE TABLE IF NOT EXISTS jobs (
    id                TEXT     NOT NULL PRIMARY KEY,
    tenant_id         TEXT     NOT NULL,
    name              TEXT     NOT NULL DEFAULT '',
    job_type          TEXT     NOT NULL,
    status            TEXT     NOT NULL DEFAULT 'pending',
    total_items       INTEGER  NOT NULL DEFAULT 0,
    processed_items   INTEGER  NOT NULL DEFAULT 0,
    successful_items  INTEGER  NOT NULL DEFAULT 0,
    failed_items      INTEGER  NOT NULL DEFAULT 0,
    config_json       TEXT     NOT NULL DEFAULT '{}',
    credits_reserved  INTEGER  NOT NULL DEFAULT 0,
    credits_refunded  INTEGER  NOT NULL DEFAULT 0,
    created_at        TEXT     NOT NULL,
    started_at        TEXT,
    completed_at      TEXT
)"""

#: ``queue_entries`` is the durable queue.  ``seq`` is a monotonically
#: increasing insertion counter that gives FIFO order within a priority;
#: ``id`` is the public identifier.  Terminal rows are kept for audit.
_DDL_QUEUE_ENTRIES = """\
CREATE TABLE IF NOT EXISTS queue_entries (
    seq               INTEGER  PRIMARY KEY AUTOINCREMENT,
    id                TEXT     NOT NULL UNIQUE,
    job_id            TEXT     NOT NULL REFERENCES jobs (id),
    tenant_id         TEXT     NOT NULL,
    account_id        TEXT,
    work_item         TEXT,
    status            TEXT     NOT NULL DEFAULT 'queued',
    priority          INTEGER  NOT NULL DEFAULT 0,
    retry_count       INTEGER  NOT NULL DEFAULT 0,
    attempts          INTEGER  NOT NULL DEFAULT 0,
    max_retries       INTEGER  NOT NULL DEFAULT 3,
    worker_id         TEXT,
    available_at      TEXT,
    last_error        TEXT,
    last_error_class  TEXT,
    result            TEXT,
    created_at        TEXT     NOT NULL,
    assigned_at       TEXT,
    started_at        TEXT,
    completed_at      TEXT
)"""

#: ``usage_records`` is append-only: one row per execution attempt.
_DDL_USAGE_RECORDS = """\
CREATE TABLE IF NOT EXISTS usage_records (
    id           INTEGER  PRIMARY KEY AUTOINCREMENT,
    account_id   TEXT     NOT NULL,
    job_id       TEXT     NOT NULL,
    entry_id     TEXT     NOT NULL,
    success      INTEGER  NOT NULL,
    latency_ms   INTEGER,
    error_class  TEXT,
    created_at   TEXT     NOT NULL
)"""

#: ``activity_log`` mirrors structured log events for operators.
_DDL_ACTIVITY_LOG = """\
CREATE TABLE IF NOT EXISTS activity_log (
    id          INTEGER  PRIMARY KEY AUTOINCREMENT,
    event       TEXT     NOT NULL,
    tenant_id   TEXT,
    job_id      TEXT,
    entry_id    TEXT,
    account_id  TEXT,
    message     TEXT     NOT NULL DEFAULT '',
    created_at  TEXT     NOT NULL
)"""

_DDL_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS ix_queue_claim "
    "ON queue_entries (status, priority, seq)",
    "CREATE INDEX IF NOT EXISTS ix_queue_job ON queue_entries (job_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_accounts_tenant ON accounts (tenant_id)",
    "CREATE INDEX IF NOT EXISTS ix_jobs_tenant ON jobs (tenant_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_usage_account "
    "ON usage_records (account_id, created_at)",
)

_DDL_TABLES: tuple[str, ...] = (
    _DDL_TENANTS,
    _DDL_ACCOUNTS,
    _DDL_JOBS,
    _DDL_QUEUE_ENTRIES,
    _DDL_USAGE_RECORDS,
    _DDL_ACTIVITY_LOG,
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and configure it for production.

    Steps performed on every call:

    1. Create parent directories for the DB file if they do not exist.
    2. Open the ``aiosqlite`` connection.
    3. Set ``row_factory = aiosqlite.Row`` so columns can be accessed by name.
    4. Enable WAL journal mode, foreign keys, and the busy timeout.
    5. Call :func:`create_schema` to bootstrap tables (idempotent).

    Args:
        path: Filesystem path for the SQLite file, or :data:`IN_MEMORY`.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open, configured :class:`aiosqlite.Connection`.  The caller is
        responsible for closing it.

    Raises:
        aiosqlite.OperationalError: If the database file cannot be opened or
            created (e.g. permission denied on the parent directory).
    """
    target: Path | str = path or DEFAULT_DB_PATH
    if str(target) != IN_MEMORY:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)

    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)

    logger.info("SQLite database ready at %s (schema verified)", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all required tables and indexes if they do not already exist.

    Idempotent and non-destructive: existing data is untouched.

    Args:
        conn: An open :class:`aiosqlite.Connection`.
    """
    for ddl in _DDL_TABLES:
        await conn.execute(ddl)
    for ddl in _DDL_INDEXES:
        await conn.execute(ddl)
    await conn.commit()
    logger.debug("Schema bootstrap complete (%d tables verified)", len(_DDL_TABLES))


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Apply PRAGMA settings that must be set immediately after opening.

    * ``journal_mode=WAL``: readers never block the writer.
    * ``foreign_keys=ON``: queue entries must reference an existing job.
    * ``busy_timeout``: a second writer waits instead of raising
      ``database is locked``.
    """
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.debug("SQLite journal_mode is %r (expected for in-memory databases)", mode)

    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
    logger.debug("SQLite pragmas applied (foreign_keys, busy_timeout=%d)", _BUSY_TIMEOUT_MS)
