"""Best-effort persisted activity log.

Every lifecycle event is already emitted through :mod:`logging`.  When an
:class:`ActivityLog` is wired in, the same events are also written to the
``activity_log`` table so operators can inspect a tenant's history with a
query instead of grepping log files.

Writes are best effort: a storage failure is logged at ``WARNING`` level
and never propagated, so observability can never break scheduling.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from jobrota.core.clock import Clock, format_ts, parse_ts, utc_now

__all__ = ["ActivityLog"]

logger = logging.getLogger(__name__)


class ActivityLog:
    """Mirror structured events into the ``activity_log`` table.

    Args:
        conn: Open connection, or ``None`` to only emit log records.
        clock: Source of "now" for the ``created_at`` column.
    """

    def __init__(self, conn: aiosqlite.Connection | None = None, *, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    async def record(
        self,
        event: str,
        message: str,
        *,
        tenant_id: str | None = None,
        job_id: str | None = None,
        entry_id: str | None = None,
        account_id: str | None = None,
        level: int = logging.INFO,
    ) -> None:
        """Log *message* with ``extra={"event": event}`` and persist it."""
        logger.log(
            level,
            message,
            extra={
                "event": event,
                "tenant_id": tenant_id,
                "job_id": job_id,
                "entry_id": entry_id,
                "account_id": account_id,
            },
        )
        if self._conn is None:
            return
        try:
            await self._conn.execute(
                """
                INSERT INTO activity_log
                    (event, tenant_id, job_id, entry_id, account_id, message, created_at)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?)
                """,
                (event, tenant_id, job_id, entry_id, account_id, message, format_ts(self._clock())),
            )
            await self._conn.commit()
        except (aiosqlite.Error, ValueError):
            logger.warning("Failed to persist activity event %s.", event, exc_info=True)

    async def recent(
        self,
        *,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Return the latest persisted events, newest first."""
        if self._conn is None:
            return []
        if tenant_id is None:
            cursor = await self._conn.execute(
                "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM activity_log WHERE tenant_id = ? ORDER BY id DESC LIMIT ?",
                (tenant_id, limit),
            )
        rows = await cursor.fetchall()
        return [
            {
                "event": row["event"],
                "tenant_id": row["tenant_id"],
                "job_id": row["job_id"],
                "entry_id": row["entry_id"],
                "account_id": row["account_id"],
                "message": row["message"],
                "created_at": parse_ts(row["created_at"]),
            }
            for row in rows
        ]
