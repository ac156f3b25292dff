"""Per-account usage counters, cooldowns, blocks, and health.

:class:`AccountLedger` is the only component that mutates accounts.  It
offers two kinds of operations:

* **Pure queries** — :meth:`~AccountLedger.is_eligible`,
  :meth:`~AccountLedger.health_score`, and
  :meth:`~AccountLedger.next_eligible_at` take an account snapshot and a
  time and never touch storage, so the selector can evaluate a whole pool
  speculatively.
* **Atomic mutations** — :meth:`~AccountLedger.record_dispatch` and
  :meth:`~AccountLedger.record_outcome` (or both at once through
  :meth:`~AccountLedger.record_attempt`).  Mutations of one account are
  serialised by a per-account :class:`asyncio.Lock` and persisted with a
  single ``UPDATE`` statement, so two workers finishing on the same account
  never lose an update.

Daily counters are calendar-day based in UTC: ``requests_today`` is treated
as zero once the last request happened on an earlier UTC day, and the
stored counter restarts at 1 on the next dispatch.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from typing import Final

from jobrota.core import events
from jobrota.core.clock import Clock, utc_now
from jobrota.core.models import (
    Account,
    ExecutionOutcome,
    JobType,
    UsageRecord,
    ValidationState,
)
from jobrota.accounts.escalation import (
    AccountState,
    EscalationDecision,
    FailureEscalationPolicy,
)
from jobrota.storage.activity import ActivityLog
from jobrota.storage.repository import AccountRepository, UsageRepository

__all__ = ["AccountLedger", "RotationStats"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Health score weights
# ---------------------------------------------------------------------------

_PENALTY_PER_FAILURE: Final[float] = 0.1
_PENALTY_RECENT_BLOCK: Final[float] = 0.2
_PENALTY_EMPTY_CREDENTIAL: Final[float] = 0.3
_PENALTY_BAD_CREDENTIAL: Final[float] = 0.5

#: A block ending less than this long ago still lowers the health score.
_RECENT_BLOCK_WINDOW: Final[timedelta] = timedelta(hours=24)

_HOUR: Final[timedelta] = timedelta(hours=1)


# ---------------------------------------------------------------------------
# Rotation statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RotationStats:
    """Snapshot of a tenant's account pool."""

    tenant_id: str
    total: int = 0
    active: int = 0
    eligible: int = 0
    cooling_down: int = 0
    blocked: int = 0
    exhausted: int = 0
    requests_today: int = 0
    average_health: float = 0.0

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "total": self.total,
            "active": self.active,
            "eligible": self.eligible,
            "cooling_down": self.cooling_down,
            "blocked": self.blocked,
            "exhausted": self.exhausted,
            "requests_today": self.requests_today,
            "average_health": round(self.average_health, 3),
        }


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class AccountLedger:
    """Tracks usage, failures, and availability of every account.

    Args:
        accounts: Repository over the ``accounts`` table.
        usage: Repository over the append-only ``usage_records`` table.
        policy: Failure escalation policy applied on every outcome.
        activity: Optional activity log for account state changes.
        clock: Source of "now".
        enforce_hourly_limit: Also cap requests per rolling hour at
            ``max(1, daily_limit // 24)``.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        usage: UsageRepository,
        policy: FailureEscalationPolicy | None = None,
        *,
        activity: ActivityLog | None = None,
        clock: Clock = utc_now,
        enforce_hourly_limit: bool = False,
    ) -> None:
        self._accounts = accounts
        self._usage = usage
        self._policy = policy or FailureEscalationPolicy()
        self._activity = activity or ActivityLog()
        self._clock = clock
        self._enforce_hourly_limit = enforce_hourly_limit
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def accounts(self) -> AccountRepository:
        return self._accounts

    @property
    def policy(self) -> FailureEscalationPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Pure queries
    # ------------------------------------------------------------------

    @staticmethod
    def effective_requests_today(account: Account, now: datetime) -> int:
        """``requests_today``, or 0 if the last request was on an earlier UTC day."""
        if account.last_request_at is None:
            return 0
        if account.last_request_at.astimezone(UTC).date() != now.astimezone(UTC).date():
            return 0
        return account.requests_today

    @staticmethod
    def daily_limit_for(account: Account, job_type: JobType | None = None) -> int:
        """The account's daily limit scaled for *job_type* (unscaled if ``None``)."""
        if job_type is None:
            return account.daily_limit
        return job_type.scaled_limit(account.daily_limit)

    def is_eligible(
        self,
        account: Account,
        now: datetime,
        job_type: JobType | None = None,
    ) -> bool:
        """Return ``True`` if *account* may be dispatched at *now*.

        An account is eligible when it is active, validated, neither blocked
        nor cooling down, below its (job-type-scaled) daily limit, and its
        minimum request spacing has elapsed.
        """
        if not account.is_active or account.validation_state is not ValidationState.ACTIVE:
            return False
        if account.blocked_until is not None and account.blocked_until >= now:
            return False
        if account.cooldown_until is not None and account.cooldown_until >= now:
            return False
        if self.effective_requests_today(account, now) >= self.daily_limit_for(account, job_type):
            return False
        if account.last_request_at is not None:
            elapsed = (now - account.last_request_at).total_seconds()
            if elapsed < account.min_delay_seconds:
                return False
        return True

    def next_eligible_at(
        self,
        account: Account,
        now: datetime,
        job_type: JobType | None = None,
    ) -> datetime | None:
        """Earliest time *account* could become eligible again.

        Considers blocks, cooldowns, the minimum request spacing, and the
        daily reset at the next UTC midnight.  Returns ``None`` when the
        account cannot become eligible on its own (inactive, not validated,
        or a daily limit of zero).  The rolling-hour cap needs storage and
        is covered separately by :meth:`hourly_window_reopens_at`.
        """
        if not account.is_active or account.validation_state is not ValidationState.ACTIVE:
            return None
        limit = self.daily_limit_for(account, job_type)
        if limit <= 0:
            return None

        candidates = [now]
        if account.blocked_until is not None and account.blocked_until >= now:
            candidates.append(account.blocked_until)
        if account.cooldown_until is not None and account.cooldown_until >= now:
            candidates.append(account.cooldown_until)
        if self.effective_requests_today(account, now) >= limit:
            tomorrow = now.astimezone(UTC).date() + timedelta(days=1)
            candidates.append(datetime.combine(tomorrow, time.min, tzinfo=UTC))
        if account.last_request_at is not None and account.min_delay_seconds > 0:
            candidates.append(
                account.last_request_at + timedelta(seconds=account.min_delay_seconds)
            )
        return max(candidates)

    def health_score(self, account: Account, now: datetime) -> float:
        """Return a 0.0–1.0 reliability score for *account*.

        Starts at 1.0 and subtracts 0.1 per consecutive failure, 0.2 when
        the account was blocked within the last 24 hours, and 0.3 for an
        empty session credential (0.5 when it is not valid JSON).
        """
        score = 1.0 - _PENALTY_PER_FAILURE * account.consecutive_failures
        if (
            account.blocked_until is not None
            and account.blocked_until > now - _RECENT_BLOCK_WINDOW
        ):
            score -= _PENALTY_RECENT_BLOCK
        score -= _credential_penalty(account.session_credential)
        return min(1.0, max(0.0, score))

    def state_of(self, account: Account, now: datetime) -> AccountState:
        """Escalation state of *account* (normal / cooldown / blocked)."""
        return self._policy.state_of(account, now)

    async def within_hourly_limit(
        self,
        account: Account,
        now: datetime,
        job_type: JobType | None = None,
    ) -> bool:
        """Return ``True`` unless the rolling-hour cap is enforced and reached."""
        if not self._enforce_hourly_limit:
            return True
        used = await self._usage.count_since(account.id, now - _HOUR)
        return used < self.hourly_limit_for(account, job_type)

    async def hourly_window_reopens_at(
        self,
        account: Account,
        now: datetime,
        job_type: JobType | None = None,
    ) -> datetime | None:
        """When the rolling-hour cap admits *account* again.

        Returns ``None`` when the cap is not enforced or not reached.  The
        window reopens once enough of the attempts inside it have aged out
        to leave one free request.
        """
        if not self._enforce_hourly_limit:
            return None
        since = now - _HOUR
        used = await self._usage.count_since(account.id, since)
        hourly = self.hourly_limit_for(account, job_type)
        if used < hourly:
            return None
        expiring = await self._usage.nth_since(account.id, since, offset=used - hourly)
        return expiring + _HOUR if expiring is not None else None

    def hourly_limit_for(self, account: Account, job_type: JobType | None = None) -> int:
        return max(1, self.daily_limit_for(account, job_type) // 24)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def record_dispatch(self, account_id: str) -> None:
        """Count one dispatched request against *account_id*.

        Called when an execution actually starts, never at selection time,
        so two selections in quick succession do not double-count usage.
        """
        now = self._clock()
        async with self._locks[account_id]:
            await self._accounts.increment_requests(account_id, now)
        logger.debug("Dispatch recorded for account %s", account_id)

    async def record_outcome(
        self,
        account_id: str,
        outcome: ExecutionOutcome,
        *,
        job_id: str = "",
        entry_id: str = "",
    ) -> EscalationDecision:
        """Apply an execution outcome to *account_id*.

        Runs the failure escalation policy, persists the new failure streak,
        cooldown, and block in one write, and appends a usage record.

        Returns:
            The escalation decision that was applied.
        """
        now = self._clock()
        async with self._locks[account_id]:
            account = await self._accounts.get(account_id)
            decision = self._policy.apply(account, outcome, now)
            updated = decision.account
            await self._accounts.update(
                account_id,
                consecutive_failures=updated.consecutive_failures,
                cooldown_until=updated.cooldown_until,
                blocked_until=updated.blocked_until,
            )
        await self._usage.append(
            UsageRecord(
                account_id=account_id,
                job_id=job_id,
                entry_id=entry_id,
                success=outcome.success,
                latency_ms=outcome.latency_ms,
                error_class=outcome.error_class,
                created_at=now,
            )
        )
        if decision.changed:
            await self._record_state_change(account, decision, job_id)
        return decision

    async def record_attempt(
        self,
        account_id: str,
        outcome: ExecutionOutcome,
        *,
        job_id: str = "",
        entry_id: str = "",
    ) -> EscalationDecision:
        """Record a dispatch and its outcome in one call."""
        await self.record_dispatch(account_id)
        return await self.record_outcome(
            account_id, outcome, job_id=job_id, entry_id=entry_id
        )

    async def set_active(self, account_id: str, active: bool) -> None:
        """Soft-enable or soft-disable an account."""
        async with self._locks[account_id]:
            await self._accounts.update(account_id, is_active=active)
        logger.info("Account %s %s", account_id, "enabled" if active else "disabled")

    async def set_validation_state(self, account_id: str, state: ValidationState) -> None:
        """Record the result of a credential validation."""
        async with self._locks[account_id]:
            await self._accounts.update(account_id, validation_state=state)
        logger.info("Account %s validation state → %s", account_id, state)

    async def rotation_stats(self, tenant_id: str) -> RotationStats:
        """Summarise the availability of *tenant_id*'s account pool."""
        now = self._clock()
        pool = await self._accounts.list_for_tenant(tenant_id)
        if not pool:
            return RotationStats(tenant_id=tenant_id)
        states = [self.state_of(account, now) for account in pool]
        return RotationStats(
            tenant_id=tenant_id,
            total=len(pool),
            active=sum(1 for account in pool if account.is_active),
            eligible=sum(1 for account in pool if self.is_eligible(account, now)),
            cooling_down=states.count(AccountState.COOLDOWN),
            blocked=states.count(AccountState.BLOCKED),
            exhausted=sum(
                1
                for account in pool
                if self.effective_requests_today(account, now) >= account.daily_limit
            ),
            requests_today=sum(self.effective_requests_today(account, now) for account in pool),
            average_health=sum(self.health_score(account, now) for account in pool) / len(pool),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _record_state_change(
        self,
        account: Account,
        decision: EscalationDecision,
        job_id: str,
    ) -> None:
        if decision.state is AccountState.BLOCKED:
            event = events.ACCOUNT_BLOCKED
        elif decision.state is AccountState.COOLDOWN:
            event = events.ACCOUNT_COOLDOWN
        else:
            event = events.ACCOUNT_RECOVERED
        until = f" until {decision.until.isoformat()}" if decision.until else ""
        await self._activity.record(
            event,
            f"Account {account.display_name} is now {decision.state}{until}",
            tenant_id=account.tenant_id,
            job_id=job_id or None,
            account_id=account.id,
            level=logging.INFO if decision.state is AccountState.NORMAL else logging.WARNING,
        )


def _credential_penalty(credential: str | None) -> float:
    if credential is None or not credential.strip():
        return _PENALTY_EMPTY_CREDENTIAL
    try:
        parsed = json.loads(credential)
    except ValueError:
        return _PENALTY_BAD_CREDENTIAL
    if not parsed:
        return _PENALTY_EMPTY_CREDENTIAL
    return 0.0
