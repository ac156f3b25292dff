"""Unit tests for AccountLedger: eligibility, wait times, health, and mutations."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from jobrota.accounts.escalation import AccountState, FailureEscalationPolicy
from jobrota.accounts.ledger import AccountLedger
from jobrota.core import events
from jobrota.core.models import Account, ErrorClass, ExecutionOutcome, JobType, ValidationState
from jobrota.storage.activity import ActivityLog
from jobrota.storage.repository import AccountRepository, UsageRepository
from tests.helpers import T0, AddAccount, ManualClock

_FAIL = ExecutionOutcome.failure(ErrorClass.TRANSIENT, "reset by peer")


def _account(**fields: object) -> Account:
    fields.setdefault("session_credential", '{"cookie": "abc"}')
    return Account(id="acc-1", tenant_id="t-1", **fields)


# ---------------------------------------------------------------------------
# Eligibility (pure)
# ---------------------------------------------------------------------------


class TestEligibility:
    def test_fresh_account_is_eligible(self, ledger: AccountLedger) -> None:
        assert ledger.is_eligible(_account(), T0)

    def test_daily_limit_boundary(self, ledger: AccountLedger) -> None:
        last = T0 - timedelta(minutes=1)
        assert ledger.is_eligible(_account(daily_limit=3, requests_today=2, last_request_at=last), T0)
        assert not ledger.is_eligible(
            _account(daily_limit=3, requests_today=3, last_request_at=last), T0
        )

    def test_counter_from_previous_day_is_ignored(self, ledger: AccountLedger) -> None:
        yesterday = T0 - timedelta(days=1)
        account = _account(daily_limit=3, requests_today=3, last_request_at=yesterday)
        assert ledger.effective_requests_today(account, T0) == 0
        assert ledger.is_eligible(account, T0)

    def test_job_type_scales_limit(self, ledger: AccountLedger) -> None:
        account = _account(daily_limit=10, requests_today=3, last_request_at=T0 - timedelta(hours=1))
        assert ledger.is_eligible(account, T0, JobType.PROFILE)
        assert not ledger.is_eligible(account, T0, JobType.MESSAGING)

    def test_min_delay(self, ledger: AccountLedger) -> None:
        account = _account(min_delay_seconds=30, last_request_at=T0 - timedelta(seconds=10))
        assert not ledger.is_eligible(account, T0)
        assert ledger.is_eligible(account, T0 + timedelta(seconds=20))

    @pytest.mark.parametrize(
        "fields",
        [
            {"is_active": False},
            {"validation_state": ValidationState.INVALID},
            {"validation_state": ValidationState.PENDING},
            {"blocked_until": T0 + timedelta(minutes=1)},
            {"cooldown_until": T0},
        ],
    )
    def test_unavailable_accounts(self, ledger: AccountLedger, fields: dict[str, object]) -> None:
        assert not ledger.is_eligible(_account(**fields), T0)

    def test_expired_block_is_eligible(self, ledger: AccountLedger) -> None:
        assert ledger.is_eligible(_account(blocked_until=T0 - timedelta(seconds=1)), T0)


class TestNextEligibleAt:
    def test_eligible_account_is_ready_now(self, ledger: AccountLedger) -> None:
        assert ledger.next_eligible_at(_account(), T0) == T0

    def test_block_end(self, ledger: AccountLedger) -> None:
        until = T0 + timedelta(minutes=45)
        assert ledger.next_eligible_at(_account(blocked_until=until), T0) == until

    def test_latest_constraint_wins(self, ledger: AccountLedger) -> None:
        account = _account(
            blocked_until=T0 + timedelta(minutes=10),
            cooldown_until=T0 + timedelta(minutes=40),
        )
        assert ledger.next_eligible_at(account, T0) == T0 + timedelta(minutes=40)

    def test_exhausted_account_resets_at_midnight(self, ledger: AccountLedger) -> None:
        account = _account(daily_limit=2, requests_today=2, last_request_at=T0)
        assert ledger.next_eligible_at(account, T0) == datetime(2026, 3, 3, tzinfo=UTC)

    def test_min_delay(self, ledger: AccountLedger) -> None:
        account = _account(min_delay_seconds=30, last_request_at=T0 - timedelta(seconds=10))
        assert ledger.next_eligible_at(account, T0) == T0 + timedelta(seconds=20)

    def test_inactive_never_becomes_eligible(self, ledger: AccountLedger) -> None:
        assert ledger.next_eligible_at(_account(is_active=False), T0) is None
        assert ledger.next_eligible_at(_account(daily_limit=0), T0) is None


# ---------------------------------------------------------------------------
# Health score
# ---------------------------------------------------------------------------


class TestHealthScore:
    def test_healthy_account(self, ledger: AccountLedger) -> None:
        assert ledger.health_score(_account(), T0) == pytest.approx(1.0)

    def test_failures_lower_score(self, ledger: AccountLedger) -> None:
        assert ledger.health_score(_account(consecutive_failures=3), T0) == pytest.approx(0.7)

    def test_recent_block_lowers_score(self, ledger: AccountLedger) -> None:
        recent = _account(blocked_until=T0 - timedelta(hours=2))
        old = _account(blocked_until=T0 - timedelta(hours=30))
        assert ledger.health_score(recent, T0) == pytest.approx(0.8)
        assert ledger.health_score(old, T0) == pytest.approx(1.0)

    @pytest.mark.parametrize(
        ("credential", "expected"),
        [(None, 0.7), ("", 0.7), ("{}", 0.7), ("not json", 0.5)],
    )
    def test_credential_penalty(
        self, ledger: AccountLedger, credential: str | None, expected: float
    ) -> None:
        account = Account(id="acc-1", tenant_id="t-1", session_credential=credential)
        assert ledger.health_score(account, T0) == pytest.approx(expected)

    def test_score_floors_at_zero(self, ledger: AccountLedger) -> None:
        account = _account(consecutive_failures=20, session_credential=None)
        assert ledger.health_score(account, T0) == 0.0


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class TestMutations:
    async def test_record_dispatch_counts_request(
        self, ledger: AccountLedger, add_account: AddAccount, accounts: AccountRepository
    ) -> None:
        await add_account("acc-1")
        await ledger.record_dispatch("acc-1")
        await ledger.record_dispatch("acc-1")
        stored = await accounts.get("acc-1")
        assert stored.requests_today == 2
        assert stored.last_request_at == T0

    async def test_record_dispatch_restarts_counter_on_new_day(
        self, ledger: AccountLedger, add_account: AddAccount, accounts: AccountRepository
    ) -> None:
        await add_account("acc-1", requests_today=50, last_request_at=T0 - timedelta(days=1))
        await ledger.record_dispatch("acc-1")
        assert (await accounts.get("acc-1")).requests_today == 1

    async def test_concurrent_dispatches_are_not_lost(
        self, ledger: AccountLedger, add_account: AddAccount, accounts: AccountRepository
    ) -> None:
        await add_account("acc-1")
        await asyncio.gather(*(ledger.record_dispatch("acc-1") for _ in range(10)))
        assert (await accounts.get("acc-1")).requests_today == 10

    async def test_five_failures_cool_the_account_down(
        self,
        ledger: AccountLedger,
        add_account: AddAccount,
        accounts: AccountRepository,
        activity: ActivityLog,
    ) -> None:
        await add_account("acc-1")
        for _ in range(5):
            decision = await ledger.record_attempt("acc-1", _FAIL, job_id="job-1", entry_id="e-1")
        assert decision.state is AccountState.COOLDOWN

        stored = await accounts.get("acc-1")
        assert stored.consecutive_failures == 5
        assert stored.cooldown_until == T0 + timedelta(hours=1)
        assert not ledger.is_eligible(stored, T0)

        recent = await activity.recent(tenant_id="t-1")
        assert [row["event"] for row in recent] == [events.ACCOUNT_COOLDOWN]
        assert recent[0]["account_id"] == "acc-1"

    async def test_outcome_appends_usage_record(
        self, ledger: AccountLedger, add_account: AddAccount, usage: UsageRepository
    ) -> None:
        await add_account("acc-1")
        await ledger.record_outcome(
            "acc-1",
            ExecutionOutcome.ok().model_copy(update={"latency_ms": 42}),
            job_id="job-1",
            entry_id="e-1",
        )
        await ledger.record_outcome("acc-1", _FAIL, job_id="job-1", entry_id="e-2")
        records = await usage.recent("acc-1")
        assert [(r.entry_id, r.success, r.error_class) for r in records] == [
            ("e-2", False, ErrorClass.TRANSIENT),
            ("e-1", True, None),
        ]
        assert records[1].latency_ms == 42

    async def test_success_recovers_blocked_account(
        self,
        ledger: AccountLedger,
        add_account: AddAccount,
        accounts: AccountRepository,
        activity: ActivityLog,
    ) -> None:
        await add_account("acc-1", consecutive_failures=2, blocked_until=T0 + timedelta(hours=1))
        decision = await ledger.record_outcome("acc-1", ExecutionOutcome.ok())
        assert decision.previous is AccountState.BLOCKED
        stored = await accounts.get("acc-1")
        assert stored.consecutive_failures == 0
        assert stored.blocked_until == T0
        assert (await activity.recent())[0]["event"] == events.ACCOUNT_RECOVERED

    async def test_set_active_and_validation(
        self, ledger: AccountLedger, add_account: AddAccount, accounts: AccountRepository
    ) -> None:
        await add_account("acc-1")
        await ledger.set_active("acc-1", False)
        await ledger.set_validation_state("acc-1", ValidationState.INVALID)
        stored = await accounts.get("acc-1")
        assert not stored.is_active
        assert stored.validation_state is ValidationState.INVALID


class TestHourlyLimit:
    async def test_disabled_by_default(self, ledger: AccountLedger) -> None:
        assert await ledger.within_hourly_limit(_account(daily_limit=1), T0)

    async def test_rolling_hour_cap(
        self,
        accounts: AccountRepository,
        usage: UsageRepository,
        add_account: AddAccount,
        clock: ManualClock,
    ) -> None:
        ledger = AccountLedger(
            accounts, usage, FailureEscalationPolicy(), clock=clock, enforce_hourly_limit=True
        )
        account = await add_account("acc-1", daily_limit=48)
        await ledger.record_attempt("acc-1", ExecutionOutcome.ok())
        assert await ledger.within_hourly_limit(account, clock())
        await ledger.record_attempt("acc-1", ExecutionOutcome.ok())
        assert not await ledger.within_hourly_limit(account, clock())

        clock.advance(hours=1, seconds=1)
        assert await ledger.within_hourly_limit(account, clock())

    async def test_window_reopens_when_oldest_attempt_ages_out(
        self,
        accounts: AccountRepository,
        usage: UsageRepository,
        add_account: AddAccount,
        clock: ManualClock,
    ) -> None:
        ledger = AccountLedger(
            accounts, usage, FailureEscalationPolicy(), clock=clock, enforce_hourly_limit=True
        )
        account = await add_account("acc-1", daily_limit=48)
        await ledger.record_attempt("acc-1", ExecutionOutcome.ok())
        assert await ledger.hourly_window_reopens_at(account, clock()) is None

        clock.advance(minutes=10)
        await ledger.record_attempt("acc-1", ExecutionOutcome.ok())
        clock.advance(minutes=10)
        assert await ledger.hourly_window_reopens_at(account, clock()) == T0 + timedelta(hours=1)

        clock.set(T0 + timedelta(hours=1))
        assert await ledger.within_hourly_limit(account, clock())
        assert await ledger.hourly_window_reopens_at(account, clock()) is None

    async def test_no_reopen_time_when_not_enforced(self, ledger: AccountLedger) -> None:
        assert await ledger.hourly_window_reopens_at(_account(daily_limit=1), T0) is None


class TestRotationStats:
    async def test_pool_summary(self, ledger: AccountLedger, add_account: AddAccount) -> None:
        await add_account("acc-1")
        await add_account("acc-2", blocked_until=T0 + timedelta(hours=1))
        await add_account("acc-3", cooldown_until=T0 + timedelta(hours=1))
        await add_account("acc-4", daily_limit=5, requests_today=5, last_request_at=T0)
        await add_account("acc-5", is_active=False)
        await add_account("other", tenant_id="t-2")

        stats = await ledger.rotation_stats("t-1")
        assert stats.total == 5
        assert stats.active == 4
        assert stats.eligible == 1
        assert stats.blocked == 1
        assert stats.cooling_down == 1
        assert stats.exhausted == 1
        assert stats.requests_today == 5
        assert stats.as_dict()["tenant_id"] == "t-1"

    async def test_empty_pool(self, ledger: AccountLedger) -> None:
        stats = await ledger.rotation_stats("nobody")
        assert stats.total == 0
        assert stats.average_health == 0.0
