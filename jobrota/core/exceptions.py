"""Jobrota exception taxonomy.

Every custom exception inherits from :class:`JobrotaError`.  Exceptions are
organised by architectural layer so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    JobrotaError
    ├── ConfigError
    ├── StorageError
    │   ├── EntryNotFoundError
    │   ├── JobNotFoundError
    │   ├── AccountNotFoundError
    │   ├── InvalidTransitionError
    │   └── ConcurrentClaimConflict
    ├── ExecutionError
    │   ├── RateLimitError
    │   ├── AuthenticationError
    │   ├── TransientExecutionError
    │   └── PermanentJobError
    ├── NoEligibleAccountError
    ├── BillingError
    │   └── InsufficientCreditsError
    ├── JobCreationError
    └── SchedulerError

Execution errors are raised by :class:`~jobrota.execution.base.ExecutionEngine`
implementations and are never propagated to the tenant: the worker pool
classifies them into an :class:`~jobrota.core.models.ErrorClass` and feeds
the result into the failure escalation policy.

Usage:

    from jobrota.core.exceptions import RateLimitError

    raise RateLimitError("acc-1", retry_after=30.0) from exc
"""

from __future__ import annotations

import logging
from datetime import timedelta

__all__ = [
    "JobrotaError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    "EntryNotFoundError",
    "JobNotFoundError",
    "AccountNotFoundError",
    "InvalidTransitionError",
    "ConcurrentClaimConflict",
    # Execution
    "ExecutionError",
    "RateLimitError",
    "AuthenticationError",
    "TransientExecutionError",
    "PermanentJobError",
    # Selection
    "NoEligibleAccountError",
    # Billing
    "BillingError",
    "InsufficientCreditsError",
    # Orchestrator
    "JobCreationError",
    "SchedulerError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class JobrotaError(Exception):
    """Root exception for all Jobrota errors.

    Catch this to handle any application-level error uniformly.  Prefer
    catching layer-specific subclasses wherever possible for precise error
    handling.
    """


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(JobrotaError):
    """Raised when the application configuration is invalid or incomplete.

    Examples:
        - ``EXECUTION_ENGINE_URL`` is missing when starting the scheduler.
        - ``stale_after_seconds`` is shorter than the execution timeout.
    """


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(JobrotaError):
    """Raised when a database or persistence operation fails."""


class EntryNotFoundError(StorageError):
    """Raised when an operation references a queue entry id that does not exist.

    Finalizing an unknown entry is a programming error and must fail loudly.

    Args:
        entry_id: The queue entry identifier that was not found.
    """

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"Queue entry not found: {entry_id!r}")


class JobNotFoundError(StorageError):
    """Raised when a job id does not exist.

    Args:
        job_id: The job identifier that was not found.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id!r}")


class AccountNotFoundError(StorageError):
    """Raised when an account id does not exist.

    Args:
        account_id: The account identifier that was not found.
    """

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id!r}")


class InvalidTransitionError(StorageError):
    """Raised when a status change is not allowed from the current status.

    Examples:
        - Resuming a job that is not paused.
        - Pausing a job that has already completed.

    Args:
        kind: Aggregate kind (``"job"`` or ``"entry"``).
        object_id: Identifier of the aggregate.
        current: Status the aggregate is currently in.
        requested: Status the caller attempted to move to.
    """

    def __init__(self, kind: str, object_id: str, current: str, requested: str) -> None:
        self.kind = kind
        self.object_id = object_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move {kind} {object_id!r} from {current!r} to {requested!r}"
        )


class ConcurrentClaimConflict(StorageError):
    """Another caller claimed the same queue entry first.

    Internal to :class:`~jobrota.storage.queue.QueueStore`: the claim is
    retried transparently and this error never escapes ``claim_next``.

    Args:
        entry_id: The entry whose compare-and-swap lost the race.
    """

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"Claim conflict on queue entry {entry_id!r}")


# ---------------------------------------------------------------------------
# Execution layer
# ---------------------------------------------------------------------------


class ExecutionError(JobrotaError):
    """Base class for all errors raised while executing one work item.

    Args:
        account_id: Account the execution ran under.
        message: Human-readable error description.
    """

    def __init__(self, account_id: str, message: str) -> None:
        self.account_id = account_id
        super().__init__(f"[{account_id}] {message}")


class RateLimitError(ExecutionError):
    """The external site throttled the account (HTTP 429 or equivalent).

    Triggers an escalating account block; the entry is retried.

    Args:
        account_id: Account that was throttled.
        retry_after: Back-off hint in seconds, if the site provided one.
    """

    def __init__(self, account_id: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        detail = f"retry after {retry_after}s" if retry_after is not None else "no retry hint"
        super().__init__(account_id, f"Rate limited ({detail})")


class AuthenticationError(ExecutionError):
    """The account session was rejected (expired or invalid credential).

    Triggers a flat account block; the entry is retried against a different
    account when one is available.
    """


class TransientExecutionError(ExecutionError):
    """A recoverable failure: network error, timeout, executor crash.

    The entry is retried against the same or a different account, bounded by
    the entry's ``max_retries``.
    """


class PermanentJobError(ExecutionError):
    """The work item itself cannot be processed (e.g. malformed input).

    The entry is terminally failed without retry and the account is not
    penalised.
    """


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class NoEligibleAccountError(JobrotaError):
    """No account of the tenant can take work right now.

    This is *not* a job failure: the entry stays queued and is retried on a
    later tick.

    Args:
        tenant_id: Tenant whose pool was exhausted.
        retry_after: Earliest time until an account becomes usable, when one
            becomes usable within the selection horizon.  ``None`` means no
            account is expected to become available soon.
    """

    def __init__(self, tenant_id: str, retry_after: timedelta | None = None) -> None:
        self.tenant_id = tenant_id
        self.retry_after = retry_after
        if retry_after is None:
            detail = "no accounts available"
        else:
            minutes = max(1, int(-(-retry_after.total_seconds() // 60)))
            detail = f"next account available in {minutes} minute(s)"
        super().__init__(f"No eligible account for tenant {tenant_id!r}: {detail}")

    @property
    def should_wait(self) -> bool:
        """``True`` when an account is expected back within the horizon."""
        return self.retry_after is not None


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class BillingError(JobrotaError):
    """Base class for credit reservation and refund errors."""


class InsufficientCreditsError(BillingError):
    """Raised when a tenant cannot cover the credit cost of a new job.

    Args:
        tenant_id: Tenant that attempted to create the job.
        required: Credits the job would reserve.
    """

    def __init__(self, tenant_id: str, required: int) -> None:
        self.tenant_id = tenant_id
        self.required = required
        super().__init__(
            f"Insufficient credits for tenant {tenant_id!r}: {required} required"
        )


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class JobCreationError(JobrotaError):
    """Raised when a job request is rejected before anything is enqueued.

    Examples:
        - The job has no work items.
        - A candidate account belongs to a different tenant.
    """


class SchedulerError(JobrotaError):
    """Raised for errors originating in the scheduling loop or worker pool.

    Examples:
        - Starting a scheduler loop that is already running.
        - Submitting to a worker pool that has been shut down.
    """
