"""Jobrota core domain models.

This module defines the aggregates the scheduling engine reasons about:

* :class:`Account` — one external identity used to execute work items.
* :class:`Job` — a tenant request, decomposed into queue entries.
* :class:`QueueEntry` — one schedulable, retryable work item.
* :class:`UsageRecord` — append-only audit row per execution attempt.
* :class:`ExecutionOutcome` — what the execution engine reports back.

All models are **frozen** pydantic models.  State changes produce new
instances via ``model_copy(update=...)`` so a snapshot read from storage can
be inspected speculatively (e.g. by the account selector) without risk of
accidental mutation.

Typical usage::

    from jobrota.core.models import Account, ValidationState

    account = Account(id="acc-1", tenant_id="t-1", daily_limit=100)
    assert account.validation_state is ValidationState.ACTIVE
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

__all__ = [
    "ValidationState",
    "JobStatus",
    "EntryStatus",
    "ErrorClass",
    "JobType",
    "SelectionStrategy",
    "CreditRefundPolicy",
    "Account",
    "JobConfig",
    "Job",
    "QueueEntry",
    "UsageRecord",
    "ExecutionOutcome",
    "WorkerInfo",
    "QueueStatus",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ValidationState(StrEnum):
    """Result of the last credential validation for an account."""

    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    INVALID = "INVALID"


class JobStatus(StrEnum):
    """Lifecycle of a :class:`Job`.

    ``pending -> running -> {completed, failed}`` is monotonic.  ``paused`` is
    a side-state entered and left only by explicit command; ``cancelled`` is a
    terminal side-state reachable only by explicit command.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """``True`` for completed, failed, and cancelled jobs."""
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class EntryStatus(StrEnum):
    """Lifecycle of a :class:`QueueEntry`."""

    QUEUED = "queued"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """``True`` once the entry has been archived as completed or failed."""
        return self in {EntryStatus.COMPLETED, EntryStatus.FAILED}

    @property
    def is_held(self) -> bool:
        """``True`` while a worker owns the entry."""
        return self in {EntryStatus.ASSIGNED, EntryStatus.PROCESSING}


class ErrorClass(StrEnum):
    """Classification of a failed execution attempt."""

    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    TRANSIENT = "transient"
    PERMANENT = "permanent"

    @property
    def retryable(self) -> bool:
        """Whether the queue entry may be retried after this failure."""
        return self is not ErrorClass.PERMANENT

    @property
    def rotates_account(self) -> bool:
        """Whether a retry should drop the account binding.

        Rate-limited and rejected accounts are blocked by the escalation
        policy, so the retry is resolved against the tenant pool instead.
        """
        return self in {ErrorClass.RATE_LIMIT, ErrorClass.AUTHENTICATION}

    @property
    def penalises_account(self) -> bool:
        """Whether the failure counts against the account's failure streak."""
        return self is not ErrorClass.PERMANENT


class JobType(StrEnum):
    """Kinds of work, each with its own share of an account's daily budget."""

    PROFILE = "profile"
    COMPANY = "company"
    SEARCH = "search"
    MESSAGING = "messaging"

    @property
    def daily_limit_factor(self) -> float:
        """Fraction of the base daily limit usable for this job type."""
        return _DAILY_LIMIT_FACTORS[self]

    def scaled_limit(self, base_limit: int) -> int:
        """Return ``floor(base_limit × factor)`` for this job type."""
        return math.floor(base_limit * self.daily_limit_factor)


_DAILY_LIMIT_FACTORS: dict[JobType, float] = {
    JobType.PROFILE: 1.0,
    JobType.COMPANY: 0.8,
    JobType.SEARCH: 0.6,
    JobType.MESSAGING: 0.3,
}


class SelectionStrategy(StrEnum):
    """Account selection strategy, chosen once per job at creation time."""

    ROUND_ROBIN = "round_robin"
    LEAST_USED = "least_used"
    HEALTH = "health"
    BALANCED = "balanced"


class CreditRefundPolicy(StrEnum):
    """What happens to credits reserved for items that ultimately fail."""

    NONE = "none"
    """Reservation is the deduction; failed items are not refunded."""

    FAILED_ITEMS = "failed_items"
    """Credits for terminally failed items are refunded when the job closes."""


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """One external identity (credential / session) usable for executing work.

    Attributes:
        id: Opaque account identifier.
        tenant_id: Owning tenant; accounts are never shared across tenants.
        label: Human-readable name used in log lines.
        is_active: Soft-disable flag.  Accounts are never hard-deleted while
            usage records reference them.
        validation_state: Result of the last credential validation.
        daily_limit: Base daily request budget (before job-type scaling).
        requests_today: Requests dispatched on the calendar day of
            ``last_request_at``.
        last_request_at: Time of the last dispatch, or ``None``.
        min_delay_seconds: Minimum spacing between two dispatches.
        consecutive_failures: Failure streak since the last success.
        cooldown_until: End of a self-healing cooldown window, or ``None``.
        blocked_until: End of a failure-escalated block, or ``None``.  Kept
            after the block ends so the health score can penalise recent
            blocks.
        session_credential: Serialised session (JSON text), or ``None``.
        created_at: Onboarding time.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    label: str = ""
    is_active: bool = True
    validation_state: ValidationState = ValidationState.ACTIVE
    daily_limit: int = Field(default=100, ge=0)
    requests_today: int = Field(default=0, ge=0)
    last_request_at: datetime | None = None
    min_delay_seconds: float = Field(default=0.0, ge=0.0)
    consecutive_failures: int = Field(default=0, ge=0)
    cooldown_until: datetime | None = None
    blocked_until: datetime | None = None
    session_credential: str | None = None
    created_at: datetime | None = None

    @property
    def display_name(self) -> str:
        """Label if set, otherwise the id."""
        return self.label or self.id


class JobConfig(BaseModel):
    """Per-job scheduling configuration, fixed at creation time.

    Attributes:
        max_retries: Retry budget copied onto every queue entry.
        strategy: Account selection strategy for tenant-pool entries.
    """

    model_config = {"frozen": True}

    max_retries: int = Field(default=3, ge=0)
    strategy: SelectionStrategy = SelectionStrategy.BALANCED


class Job(BaseModel):
    """A tenant-requested unit of work, decomposed into queue entries.

    Counters only move when an entry reaches a terminal state, so
    ``processed_items == successful_items + failed_items`` always holds.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    name: str = ""
    job_type: JobType = JobType.PROFILE
    status: JobStatus = JobStatus.PENDING
    total_items: int = Field(default=0, ge=0)
    processed_items: int = Field(default=0, ge=0)
    successful_items: int = Field(default=0, ge=0)
    failed_items: int = Field(default=0, ge=0)
    config: JobConfig = Field(default_factory=JobConfig)
    credits_reserved: int = Field(default=0, ge=0)
    credits_refunded: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def remaining_items(self) -> int:
        """Items not yet in a terminal state."""
        return self.total_items - self.processed_items


class QueueEntry(BaseModel):
    """One schedulable unit binding a job's work item to a candidate account.

    ``account_id`` is ``None`` for tenant-pool entries until the scheduler
    resolves an account; it is also cleared when a retry must rotate to a
    different account.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    job_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    account_id: str | None = None
    work_item: Any = None
    status: EntryStatus = EntryStatus.QUEUED
    priority: int = 0
    retry_count: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    worker_id: str | None = None
    available_at: datetime | None = None
    last_error: str | None = None
    last_error_class: ErrorClass | None = None
    result: Any = None
    created_at: datetime | None = None
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class UsageRecord(BaseModel):
    """Append-only record of one execution attempt."""

    model_config = {"frozen": True}

    account_id: str
    job_id: str
    entry_id: str
    success: bool
    latency_ms: int | None = None
    error_class: ErrorClass | None = None
    created_at: datetime | None = None


class ExecutionOutcome(BaseModel):
    """Result reported for one execution attempt.

    A failed outcome always carries an :class:`ErrorClass`; a missing class
    on failure is normalised to :attr:`ErrorClass.TRANSIENT`.
    """

    model_config = {"frozen": True}

    success: bool
    payload: Any = None
    error_class: ErrorClass | None = None
    error_message: str | None = None
    latency_ms: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_error_class(cls, data: Any) -> Any:
        """Failures without a classification are treated as transient."""
        if isinstance(data, dict) and not data.get("success") and data.get("error_class") is None:
            return {**data, "error_class": ErrorClass.TRANSIENT}
        return data

    @model_validator(mode="after")
    def _reject_classified_success(self) -> ExecutionOutcome:
        if self.success and self.error_class is not None:
            raise ValueError("a successful outcome cannot carry an error_class")
        return self

    @classmethod
    def ok(cls, payload: Any = None) -> ExecutionOutcome:
        """Build a successful outcome."""
        return cls(success=True, payload=payload)

    @classmethod
    def failure(cls, error_class: ErrorClass, message: str | None = None) -> ExecutionOutcome:
        """Build a failed outcome of the given class."""
        return cls(success=False, error_class=error_class, error_message=message)


# ---------------------------------------------------------------------------
# Administrative views
# ---------------------------------------------------------------------------


class WorkerInfo(BaseModel):
    """One in-flight execution, as exposed by the admin surface."""

    worker_id: str
    entry_id: str
    job_id: str
    tenant_id: str
    account_id: str
    started_at: datetime


class QueueStatus(BaseModel):
    """Snapshot returned by ``get_queue_status``."""

    counts_by_status: dict[str, int] = Field(default_factory=dict)
    active_worker_count: int = 0
    max_concurrent_workers: int = 0
    workers: list[WorkerInfo] = Field(default_factory=list)
