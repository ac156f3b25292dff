"""Account rotation: usage and health bookkeeping, failure escalation, and selection."""

from jobrota.accounts.escalation import (
    AccountState,
    EscalationDecision,
    FailureEscalationPolicy,
    classify_exception,
    outcome_from_exception,
)
from jobrota.accounts.ledger import AccountLedger, RotationStats
from jobrota.accounts.selector import AccountSelector

__all__ = [
    "AccountLedger",
    "AccountSelector",
    "RotationStats",
    "AccountState",
    "EscalationDecision",
    "FailureEscalationPolicy",
    "classify_exception",
    "outcome_from_exception",
]
