"""Unit tests for the failure escalation policy and exception classification."""

from __future__ import annotations

from datetime import timedelta

import pytest

from jobrota.accounts.escalation import (
    AccountState,
    FailureEscalationPolicy,
    classify_exception,
    outcome_from_exception,
)
from jobrota.core.exceptions import (
    AuthenticationError,
    PermanentJobError,
    RateLimitError,
    TransientExecutionError,
)
from jobrota.core.models import Account, ErrorClass, ExecutionOutcome
from jobrota.core.settings import Settings
from tests.helpers import T0

NOW = T0

_TRANSIENT = ExecutionOutcome.failure(ErrorClass.TRANSIENT, "network")
_RATE_LIMIT = ExecutionOutcome.failure(ErrorClass.RATE_LIMIT, "429")
_AUTH = ExecutionOutcome.failure(ErrorClass.AUTHENTICATION, "401")
_PERMANENT = ExecutionOutcome.failure(ErrorClass.PERMANENT, "bad url")


def _account(**fields: object) -> Account:
    return Account(id="acc-1", tenant_id="t-1", **fields)


@pytest.fixture()
def policy() -> FailureEscalationPolicy:
    return FailureEscalationPolicy()


# ---------------------------------------------------------------------------
# Consecutive failures → cooldown
# ---------------------------------------------------------------------------


class TestCooldown:
    def test_four_failures_stay_normal(self, policy: FailureEscalationPolicy) -> None:
        account = _account()
        for expected in range(1, 5):
            decision = policy.apply(account, _TRANSIENT, NOW)
            account = decision.account
            assert account.consecutive_failures == expected
            assert decision.state is AccountState.NORMAL
            assert not decision.changed
        assert account.cooldown_until is None

    def test_fifth_failure_starts_one_hour_cooldown(self, policy: FailureEscalationPolicy) -> None:
        decision = policy.apply(_account(consecutive_failures=4), _TRANSIENT, NOW)
        assert decision.changed
        assert decision.previous is AccountState.NORMAL
        assert decision.state is AccountState.COOLDOWN
        assert decision.account.cooldown_until == NOW + timedelta(minutes=60)
        assert decision.until == NOW + timedelta(minutes=60)

    def test_custom_threshold(self) -> None:
        policy = FailureEscalationPolicy(failure_threshold=2, cooldown=timedelta(minutes=5))
        decision = policy.apply(_account(consecutive_failures=1), _TRANSIENT, NOW)
        assert decision.state is AccountState.COOLDOWN
        assert decision.account.cooldown_until == NOW + timedelta(minutes=5)

    def test_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="failure_threshold"):
            FailureEscalationPolicy(failure_threshold=0)


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


class TestBlocks:
    def test_first_rate_limit_blocks_for_one_step(self, policy: FailureEscalationPolicy) -> None:
        decision = policy.apply(_account(), _RATE_LIMIT, NOW)
        assert decision.state is AccountState.BLOCKED
        assert decision.account.consecutive_failures == 1
        assert decision.account.blocked_until == NOW + timedelta(minutes=60)

    def test_rate_limit_block_escalates_with_streak(self, policy: FailureEscalationPolicy) -> None:
        decision = policy.apply(_account(consecutive_failures=2), _RATE_LIMIT, NOW)
        assert decision.account.blocked_until == NOW + timedelta(minutes=180)

    def test_rate_limit_block_is_capped(self, policy: FailureEscalationPolicy) -> None:
        decision = policy.apply(_account(consecutive_failures=20), _RATE_LIMIT, NOW)
        assert decision.account.blocked_until == NOW + timedelta(minutes=480)

    def test_rate_limit_block_helper(self, policy: FailureEscalationPolicy) -> None:
        assert policy.rate_limit_block(0) == timedelta(minutes=60)
        assert policy.rate_limit_block(3) == timedelta(minutes=180)
        assert policy.rate_limit_block(9) == timedelta(minutes=480)

    def test_authentication_blocks_for_two_hours(self, policy: FailureEscalationPolicy) -> None:
        decision = policy.apply(_account(consecutive_failures=3), _AUTH, NOW)
        assert decision.state is AccountState.BLOCKED
        assert decision.account.consecutive_failures == 4
        assert decision.account.blocked_until == NOW + timedelta(minutes=120)

    def test_transient_failure_while_blocked_keeps_block(
        self, policy: FailureEscalationPolicy
    ) -> None:
        blocked = _account(consecutive_failures=4, blocked_until=NOW + timedelta(minutes=30))
        decision = policy.apply(blocked, _TRANSIENT, NOW)
        assert decision.state is AccountState.BLOCKED
        assert decision.account.blocked_until == NOW + timedelta(minutes=30)
        assert decision.account.cooldown_until == NOW + timedelta(minutes=60)


# ---------------------------------------------------------------------------
# Recovery and neutral outcomes
# ---------------------------------------------------------------------------


class TestRecovery:
    def test_success_resets_streak_and_cooldown(self, policy: FailureEscalationPolicy) -> None:
        account = _account(consecutive_failures=5, cooldown_until=NOW + timedelta(minutes=10))
        decision = policy.apply(account, ExecutionOutcome.ok(), NOW)
        assert decision.previous is AccountState.COOLDOWN
        assert decision.state is AccountState.NORMAL
        assert decision.changed
        assert decision.account.consecutive_failures == 0
        assert decision.account.cooldown_until is None

    def test_success_ends_active_block_now(self, policy: FailureEscalationPolicy) -> None:
        account = _account(consecutive_failures=1, blocked_until=NOW + timedelta(hours=2))
        decision = policy.apply(account, ExecutionOutcome.ok(), NOW)
        assert decision.account.blocked_until == NOW

    def test_success_keeps_past_block_for_health(self, policy: FailureEscalationPolicy) -> None:
        past = NOW - timedelta(hours=3)
        decision = policy.apply(_account(blocked_until=past), ExecutionOutcome.ok(), NOW)
        assert decision.account.blocked_until == past
        assert not decision.changed

    def test_permanent_failure_leaves_account_untouched(
        self, policy: FailureEscalationPolicy
    ) -> None:
        account = _account(consecutive_failures=4)
        decision = policy.apply(account, _PERMANENT, NOW)
        assert decision.account == account
        assert not decision.changed


class TestStateOf:
    def test_block_ends_strictly_after_until(self, policy: FailureEscalationPolicy) -> None:
        account = _account(blocked_until=NOW)
        assert policy.state_of(account, NOW) is AccountState.BLOCKED
        assert policy.state_of(account, NOW + timedelta(microseconds=1)) is AccountState.NORMAL

    def test_block_takes_precedence_over_cooldown(self, policy: FailureEscalationPolicy) -> None:
        account = _account(
            blocked_until=NOW + timedelta(minutes=5),
            cooldown_until=NOW + timedelta(minutes=50),
        )
        assert policy.state_of(account, NOW) is AccountState.BLOCKED


class TestFromSettings:
    def test_uses_settings_values(self, clean_env: None) -> None:
        settings = Settings(
            failure_threshold=2,
            cooldown_minutes=10,
            rate_limit_block_step_minutes=15,
            rate_limit_block_cap_minutes=30,
            auth_block_minutes=45,
        )
        policy = FailureEscalationPolicy.from_settings(settings)
        assert policy.failure_threshold == 2
        assert policy.rate_limit_block(5) == timedelta(minutes=30)
        decision = policy.apply(_account(), _AUTH, NOW)
        assert decision.account.blocked_until == NOW + timedelta(minutes=45)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (RateLimitError("acc-1", retry_after=5.0), ErrorClass.RATE_LIMIT),
            (AuthenticationError("acc-1", "expired"), ErrorClass.AUTHENTICATION),
            (PermanentJobError("acc-1", "bad"), ErrorClass.PERMANENT),
            (TransientExecutionError("acc-1", "reset"), ErrorClass.TRANSIENT),
            (TimeoutError(), ErrorClass.TRANSIENT),
            (RuntimeError("boom"), ErrorClass.TRANSIENT),
        ],
    )
    def test_classify_exception(self, exc: BaseException, expected: ErrorClass) -> None:
        assert classify_exception(exc) is expected

    def test_outcome_from_exception_uses_message(self) -> None:
        outcome = outcome_from_exception(PermanentJobError("acc-1", "malformed"))
        assert not outcome.success
        assert outcome.error_class is ErrorClass.PERMANENT
        assert "malformed" in (outcome.error_message or "")

    def test_outcome_from_exception_without_message(self) -> None:
        assert outcome_from_exception(RuntimeError()).error_message == "RuntimeError"
