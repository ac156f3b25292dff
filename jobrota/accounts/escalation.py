"""Per-account failure escalation: retry vs. cooldown vs. block.

Consumes execution outcomes and decides how an account's availability
changes.  The policy is a pure function of the account snapshot, the
outcome, and the current time: it never touches storage.  The
:class:`~jobrota.accounts.ledger.AccountLedger` applies the returned account
state in a single write.

State machine
~~~~~~~~~~~~~
::

    NORMAL ──(failure_threshold consecutive failures)──▶ COOLDOWN(now + 1h)
      │  ▲                                                   │
      │  └──────────(success, or cooldown_until passes)──────┘
      │
      ├──(rate_limit)──▶ BLOCKED(now + min(step × failures, cap))
      └──(authentication)──▶ BLOCKED(now + 120 min)

    BLOCKED ──(success, or blocked_until passes)──▶ NORMAL

Permanent failures describe a bad work item, not a bad account, so they
leave the account untouched.  Entry retries are decided independently by
:meth:`~jobrota.storage.queue.QueueStore.finalize`.

Typical usage::

    policy = FailureEscalationPolicy(failure_threshold=5)
    decision = policy.apply(account, outcome, now)
    if decision.changed:
        logger.warning("Account %s is now %s", account.id, decision.state)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Final

from jobrota.core.exceptions import (
    AuthenticationError,
    PermanentJobError,
    RateLimitError,
)
from jobrota.core.models import Account, ErrorClass, ExecutionOutcome
from jobrota.core.settings import Settings

__all__ = [
    "AccountState",
    "EscalationDecision",
    "FailureEscalationPolicy",
    "classify_exception",
    "outcome_from_exception",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Consecutive failures that put an account into cooldown.
_DEFAULT_FAILURE_THRESHOLD: Final[int] = 5

#: Length of a self-healing cooldown.
_DEFAULT_COOLDOWN: Final[timedelta] = timedelta(minutes=60)

#: Block added per consecutive failure on a rate-limit error.
_DEFAULT_RATE_LIMIT_STEP: Final[timedelta] = timedelta(minutes=60)

#: Upper bound on an escalated rate-limit block.
_DEFAULT_RATE_LIMIT_CAP: Final[timedelta] = timedelta(minutes=480)

#: Flat block after the site rejects the account session.
_DEFAULT_AUTH_BLOCK: Final[timedelta] = timedelta(minutes=120)


# ---------------------------------------------------------------------------
# State types
# ---------------------------------------------------------------------------


class AccountState(StrEnum):
    """Availability of an account as seen by the escalation policy."""

    NORMAL = "normal"
    """Usable, subject to the ledger's rate-limit checks."""

    COOLDOWN = "cooldown"
    """Too many consecutive failures; self-heals at ``cooldown_until``."""

    BLOCKED = "blocked"
    """Throttled or rejected by the site; unusable until ``blocked_until``."""


@dataclass(frozen=True)
class EscalationDecision:
    """Result of applying one outcome to one account.

    Attributes:
        account: Account snapshot with the new failure/cooldown/block fields.
        previous: State before the outcome.
        state: State after the outcome.
        until: End of the new cooldown or block, when there is one.
    """

    account: Account
    previous: AccountState
    state: AccountState
    until: datetime | None = None

    @property
    def changed(self) -> bool:
        return self.previous is not self.state


# ---------------------------------------------------------------------------
# Exception classification
# ---------------------------------------------------------------------------


def classify_exception(exc: BaseException) -> ErrorClass:
    """Map an exception raised while executing a work item to an :class:`ErrorClass`.

    Unknown exceptions and timeouts are transient: they are retried within
    the entry's budget and count against the account.
    """
    if isinstance(exc, RateLimitError):
        return ErrorClass.RATE_LIMIT
    if isinstance(exc, AuthenticationError):
        return ErrorClass.AUTHENTICATION
    if isinstance(exc, PermanentJobError):
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


def outcome_from_exception(exc: BaseException) -> ExecutionOutcome:
    """Build the failed :class:`ExecutionOutcome` corresponding to *exc*."""
    message = str(exc) or type(exc).__name__
    return ExecutionOutcome.failure(classify_exception(exc), message)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class FailureEscalationPolicy:
    """Decides cooldowns and blocks from consecutive execution outcomes.

    Args:
        failure_threshold: Consecutive failures that trigger a cooldown.
        cooldown: Cooldown length.
        rate_limit_step: Block length per consecutive failure on a rate-limit
            error.
        rate_limit_cap: Upper bound on a rate-limit block.
        auth_block: Block length on an authentication error.
    """

    def __init__(
        self,
        failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD,
        cooldown: timedelta = _DEFAULT_COOLDOWN,
        rate_limit_step: timedelta = _DEFAULT_RATE_LIMIT_STEP,
        rate_limit_cap: timedelta = _DEFAULT_RATE_LIMIT_CAP,
        auth_block: timedelta = _DEFAULT_AUTH_BLOCK,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be ≥ 1, got {failure_threshold!r}.")
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown
        self._rate_limit_step = rate_limit_step
        self._rate_limit_cap = rate_limit_cap
        self._auth_block = auth_block

    @classmethod
    def from_settings(cls, settings: Settings) -> FailureEscalationPolicy:
        """Build a policy from the escalation fields of *settings*."""
        return cls(
            failure_threshold=settings.failure_threshold,
            cooldown=timedelta(minutes=settings.cooldown_minutes),
            rate_limit_step=timedelta(minutes=settings.rate_limit_block_step_minutes),
            rate_limit_cap=timedelta(minutes=settings.rate_limit_block_cap_minutes),
            auth_block=timedelta(minutes=settings.auth_block_minutes),
        )

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state_of(self, account: Account, now: datetime) -> AccountState:
        """Return the escalation state of *account* at *now*.

        A block takes precedence over a cooldown.  Both end strictly after
        their ``*_until`` timestamp.
        """
        if account.blocked_until is not None and account.blocked_until >= now:
            return AccountState.BLOCKED
        if account.cooldown_until is not None and account.cooldown_until >= now:
            return AccountState.COOLDOWN
        return AccountState.NORMAL

    def rate_limit_block(self, consecutive_failures: int) -> timedelta:
        """Block length for a rate-limit error at the given failure streak."""
        return min(self._rate_limit_step * max(consecutive_failures, 1), self._rate_limit_cap)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply(self, account: Account, outcome: ExecutionOutcome, now: datetime) -> EscalationDecision:
        """Apply *outcome* to *account* and return the resulting decision.

        * **Success** → failure streak reset, cooldown cleared, an active
          block ended (``blocked_until`` set to *now* so the health score
          still reflects the recent block).
        * **Permanent failure** → account unchanged.
        * **Rate limit** → streak + 1, blocked for
          ``min(step × streak, cap)``.
        * **Authentication** → streak + 1, blocked for ``auth_block``.
        * **Other failure** → streak + 1, cooldown once the streak reaches
          the threshold.
        """
        previous = self.state_of(account, now)

        if outcome.success:
            blocked_until = account.blocked_until
            if blocked_until is not None and blocked_until > now:
                blocked_until = now
            updated = account.model_copy(
                update={
                    "consecutive_failures": 0,
                    "cooldown_until": None,
                    "blocked_until": blocked_until,
                }
            )
            if previous is not AccountState.NORMAL:
                logger.info(
                    "Account %s recovered from %s after a successful execution.",
                    account.id,
                    previous,
                )
            return EscalationDecision(updated, previous, AccountState.NORMAL)

        error_class = outcome.error_class or ErrorClass.TRANSIENT
        if not error_class.penalises_account:
            logger.debug(
                "Account %s not penalised for %s failure.", account.id, error_class
            )
            return EscalationDecision(account, previous, previous)

        failures = account.consecutive_failures + 1
        update: dict[str, object] = {"consecutive_failures": failures}
        until: datetime | None = None
        state = previous

        if error_class is ErrorClass.RATE_LIMIT:
            until = now + self.rate_limit_block(failures)
            update["blocked_until"] = until
            state = AccountState.BLOCKED
            logger.warning(
                "Account %s rate limited (failure #%d) — blocked until %s.",
                account.id,
                failures,
                until.isoformat(),
            )
        elif error_class is ErrorClass.AUTHENTICATION:
            until = now + self._auth_block
            update["blocked_until"] = until
            state = AccountState.BLOCKED
            logger.warning(
                "Account %s session rejected — blocked until %s.",
                account.id,
                until.isoformat(),
            )
        elif failures >= self._failure_threshold:
            until = now + self._cooldown
            update["cooldown_until"] = until
            state = AccountState.COOLDOWN if previous is not AccountState.BLOCKED else previous
            logger.warning(
                "Account %s reached %d consecutive failures — cooling down until %s.",
                account.id,
                failures,
                until.isoformat(),
            )
        else:
            logger.debug(
                "Account %s failure %d / %d — remains %s.",
                account.id,
                failures,
                self._failure_threshold,
                previous,
            )

        return EscalationDecision(account.model_copy(update=update), previous, state, until)
