"""Pick the next account of a tenant for a job type.

Selection is a read-only operation: it filters the tenant's pool down to
eligible accounts (with the job-type-scaled daily limit), optionally drops
accounts below a minimum health score, and ranks the rest with the job's
:class:`~jobrota.core.models.SelectionStrategy`.  Usage is only counted
when the worker pool actually dispatches the execution.

When no account is eligible, :class:`NoEligibleAccountError` tells the
caller how long to wait: the smallest time until some account becomes usable
again, if that happens within the retry horizon, or ``None`` ("no accounts
available") otherwise.

Strategies
~~~~~~~~~~
* ``round_robin`` — rotate a per-tenant index across the eligible set.
* ``least_used`` — fewest requests today.
* ``health`` — highest health score.
* ``balanced`` — ``0.4 × health + 0.3 × (1 − used/limit) + 0.3 × rotation``
  where rotation is ``min(1, hours_since_last_use / 24)``.

Ties are broken by account id so selection is deterministic.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

from jobrota.accounts.ledger import AccountLedger
from jobrota.core.clock import Clock, utc_now
from jobrota.core.exceptions import NoEligibleAccountError
from jobrota.core.models import Account, JobType, SelectionStrategy
from jobrota.storage.repository import AccountRepository

__all__ = ["AccountSelector"]

logger = logging.getLogger(__name__)

#: Default window within which an unavailable account produces a wait signal.
_DEFAULT_HORIZON: Final[timedelta] = timedelta(hours=1)

_WEIGHT_HEALTH: Final[float] = 0.4
_WEIGHT_UNUSED_BUDGET: Final[float] = 0.3
_WEIGHT_ROTATION: Final[float] = 0.3

#: A strategy receives the eligible accounts (sorted by id) and returns one.
_Strategy = Callable[["AccountSelector", str, list[Account], JobType, datetime], Account]


class AccountSelector:
    """Chooses accounts for queue entries.

    Args:
        accounts: Repository used to load a tenant's pool.
        ledger: Supplies eligibility, health scores, and wait times.
        clock: Source of "now".
        horizon: Accounts usable again within this window yield a wait
            signal rather than "no accounts available".
        min_health_score: Eligible accounts scoring below this are skipped.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        ledger: AccountLedger,
        *,
        clock: Clock = utc_now,
        horizon: timedelta = _DEFAULT_HORIZON,
        min_health_score: float = 0.0,
    ) -> None:
        self._accounts = accounts
        self._ledger = ledger
        self._clock = clock
        self._horizon = horizon
        self._min_health_score = min_health_score
        self._rr_index: defaultdict[str, int] = defaultdict(int)

    async def select(
        self,
        tenant_id: str,
        job_type: JobType = JobType.PROFILE,
        strategy: SelectionStrategy = SelectionStrategy.BALANCED,
    ) -> Account:
        """Return the best eligible account of *tenant_id* for *job_type*.

        Raises:
            NoEligibleAccountError: If no account can be used right now.
                ``retry_after`` carries the wait when one is known.
        """
        now = self._clock()
        pool = await self._accounts.list_for_tenant(tenant_id)
        eligible = await self.eligible_accounts(pool, now, job_type)
        if not eligible:
            retry_after = await self.retry_after(pool, now, job_type)
            logger.debug(
                "No eligible account for tenant %s (%s, pool=%d, retry_after=%s)",
                tenant_id,
                job_type,
                len(pool),
                retry_after,
            )
            raise NoEligibleAccountError(tenant_id, retry_after)

        chosen = _STRATEGIES[strategy](self, tenant_id, eligible, job_type, now)
        logger.debug(
            "Selected account %s for tenant %s via %s (%d eligible)",
            chosen.id,
            tenant_id,
            strategy,
            len(eligible),
        )
        return chosen

    async def eligible_accounts(
        self,
        pool: list[Account],
        now: datetime,
        job_type: JobType | None = None,
    ) -> list[Account]:
        """Filter *pool* to accounts that may be dispatched at *now*."""
        eligible: list[Account] = []
        for account in sorted(pool, key=lambda a: a.id):
            if not self._ledger.is_eligible(account, now, job_type):
                continue
            if self._ledger.health_score(account, now) < self._min_health_score:
                continue
            if not await self._ledger.within_hourly_limit(account, now, job_type):
                continue
            eligible.append(account)
        return eligible

    async def retry_after(
        self,
        pool: list[Account],
        now: datetime,
        job_type: JobType | None = None,
    ) -> timedelta | None:
        """Smallest wait until an account of *pool* is usable, within the horizon.

        Accounts that would still fall below ``min_health_score`` once their
        block or cooldown ends are left out: their health only recovers
        through a successful dispatch, which the filter prevents.
        """
        waits: list[timedelta] = []
        for account in pool:
            ready_at = self._ledger.next_eligible_at(account, now, job_type)
            if ready_at is None:
                continue
            if self._ledger.health_score(account, ready_at) < self._min_health_score:
                continue
            reopens_at = await self._ledger.hourly_window_reopens_at(account, now, job_type)
            if reopens_at is not None:
                ready_at = max(ready_at, reopens_at)
            waits.append(ready_at - now)
        in_horizon = [wait for wait in waits if wait <= self._horizon]
        if not in_horizon:
            return None
        return max(min(in_horizon), timedelta(0))

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _round_robin(
        self,
        tenant_id: str,
        eligible: list[Account],
        job_type: JobType,
        now: datetime,
    ) -> Account:
        index = self._rr_index[tenant_id]
        self._rr_index[tenant_id] = index + 1
        return eligible[index % len(eligible)]

    def _least_used(
        self,
        tenant_id: str,
        eligible: list[Account],
        job_type: JobType,
        now: datetime,
    ) -> Account:
        return min(
            eligible,
            key=lambda a: (self._ledger.effective_requests_today(a, now), a.id),
        )

    def _healthiest(
        self,
        tenant_id: str,
        eligible: list[Account],
        job_type: JobType,
        now: datetime,
    ) -> Account:
        return min(eligible, key=lambda a: (-self._ledger.health_score(a, now), a.id))

    def _balanced(
        self,
        tenant_id: str,
        eligible: list[Account],
        job_type: JobType,
        now: datetime,
    ) -> Account:
        return min(
            eligible,
            key=lambda a: (-self.balanced_score(a, now, job_type), a.id),
        )

    def balanced_score(self, account: Account, now: datetime, job_type: JobType | None = None) -> float:
        """Composite score used by the ``balanced`` strategy."""
        limit = self._ledger.daily_limit_for(account, job_type)
        used = self._ledger.effective_requests_today(account, now)
        unused_budget = 1.0 - used / limit if limit > 0 else 0.0
        if account.last_request_at is None:
            rotation = 1.0
        else:
            hours = (now - account.last_request_at).total_seconds() / 3600
            rotation = min(1.0, max(0.0, hours / 24))
        return (
            _WEIGHT_HEALTH * self._ledger.health_score(account, now)
            + _WEIGHT_UNUSED_BUDGET * unused_budget
            + _WEIGHT_ROTATION * rotation
        )


_STRATEGIES: Final[dict[SelectionStrategy, _Strategy]] = {
    SelectionStrategy.ROUND_ROBIN: AccountSelector._round_robin,
    SelectionStrategy.LEAST_USED: AccountSelector._least_used,
    SelectionStrategy.HEALTH: AccountSelector._healthiest,
    SelectionStrategy.BALANCED: AccountSelector._balanced,
}
