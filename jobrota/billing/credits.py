"""Tenant credit reservation.

Credits are reserved for every work item when a job is created and handed
back when items never get a chance to run (job cancellation) or, under the
``failed_items`` refund policy, when they fail terminally.

:class:`SQLiteCreditLedger` keeps balances in the ``tenants`` table.  A
reservation is a single conditional ``UPDATE`` (decrement only if the
balance suffices), so concurrent job creations for the same tenant can never
overdraw it, even across processes sharing the database file.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import aiosqlite

from jobrota.core import events
from jobrota.core.clock import Clock, format_ts, utc_now
from jobrota.core.exceptions import BillingError

__all__ = ["CreditLedger", "SQLiteCreditLedger"]

logger = logging.getLogger(__name__)


class CreditLedger(ABC):
    """Interface to the tenant credit store."""

    @abstractmethod
    async def reserve(self, tenant_id: str, amount: int) -> bool:
        """Atomically deduct *amount* if the balance suffices.

        Returns:
            ``True`` if the credits were reserved, ``False`` otherwise.
        """

    @abstractmethod
    async def release(self, tenant_id: str, amount: int) -> None:
        """Return *amount* previously reserved credits to *tenant_id*."""

    @abstractmethod
    async def balance(self, tenant_id: str) -> int:
        """Current balance of *tenant_id*."""


class SQLiteCreditLedger(CreditLedger):
    """Credit balances stored in the ``tenants`` table.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
        clock: Source of "now" for tenant creation timestamps.
    """

    def __init__(self, conn: aiosqlite.Connection, *, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    async def add_tenant(self, tenant_id: str, name: str = "", credits: int = 0) -> None:
        """Register *tenant_id* with an opening balance (no-op if it exists)."""
        if credits < 0:
            raise ValueError(f"credits must be ≥ 0, got {credits!r}.")
        await self._conn.execute(
            """
            INSERT INTO tenants (id, name, credits, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO NOTHING
            """,
            (tenant_id, name, credits, format_ts(self._clock())),
        )
        await self._conn.commit()

    async def add_credits(self, tenant_id: str, amount: int) -> int:
        """Top up *tenant_id* by *amount* and return the new balance.

        Raises:
            BillingError: If the tenant is unknown.
        """
        if amount < 0:
            raise ValueError(f"amount must be ≥ 0, got {amount!r}.")
        await self._credit(tenant_id, amount)
        return await self.balance(tenant_id)

    async def reserve(self, tenant_id: str, amount: int) -> bool:
        if amount < 0:
            raise ValueError(f"amount must be ≥ 0, got {amount!r}.")
        cursor = await self._conn.execute(
            "UPDATE tenants SET credits = credits - ? WHERE id = ? AND credits >= ?",
            (amount, tenant_id, amount),
        )
        await self._conn.commit()
        reserved = cursor.rowcount == 1
        if reserved:
            logger.info(
                "Reserved %d credit(s) for tenant %s",
                amount,
                tenant_id,
                extra={"event": events.CREDITS_RESERVED, "tenant_id": tenant_id},
            )
        else:
            logger.info("Credit reservation of %d refused for tenant %s", amount, tenant_id)
        return reserved

    async def release(self, tenant_id: str, amount: int) -> None:
        if amount <= 0:
            return
        await self._credit(tenant_id, amount)
        logger.info(
            "Released %d credit(s) to tenant %s",
            amount,
            tenant_id,
            extra={"event": events.CREDITS_RELEASED, "tenant_id": tenant_id},
        )

    async def balance(self, tenant_id: str) -> int:
        """Raises :class:`BillingError` if *tenant_id* is unknown."""
        cursor = await self._conn.execute("SELECT credits FROM tenants WHERE id = ?", (tenant_id,))
        row = await cursor.fetchone()
        if row is None:
            raise BillingError(f"Unknown tenant {tenant_id!r}")
        return int(row[0])

    async def _credit(self, tenant_id: str, amount: int) -> None:
        cursor = await self._conn.execute(
            "UPDATE tenants SET credits = credits + ? WHERE id = ?",
            (amount, tenant_id),
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            raise BillingError(f"Unknown tenant {tenant_id!r}")
