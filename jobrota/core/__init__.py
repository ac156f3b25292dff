"""Core domain models, settings, logging configuration, and shared utilities."""

from jobrota.core.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    BillingError,
    ConcurrentClaimConflict,
    ConfigError,
    EntryNotFoundError,
    ExecutionError,
    InsufficientCreditsError,
    InvalidTransitionError,
    JobCreationError,
    JobNotFoundError,
    JobrotaError,
    NoEligibleAccountError,
    PermanentJobError,
    RateLimitError,
    SchedulerError,
    StorageError,
    TransientExecutionError,
)
from jobrota.core.logging_config import JsonFormatter, configure_logging
from jobrota.core.models import (
    Account,
    CreditRefundPolicy,
    EntryStatus,
    ErrorClass,
    ExecutionOutcome,
    Job,
    JobConfig,
    JobStatus,
    JobType,
    QueueEntry,
    QueueStatus,
    SelectionStrategy,
    UsageRecord,
    ValidationState,
    WorkerInfo,
)
from jobrota.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Account",
    "Job",
    "JobConfig",
    "QueueEntry",
    "UsageRecord",
    "ExecutionOutcome",
    "WorkerInfo",
    "QueueStatus",
    # Enumerations
    "ValidationState",
    "JobStatus",
    "EntryStatus",
    "ErrorClass",
    "JobType",
    "SelectionStrategy",
    "CreditRefundPolicy",
    # Settings
    "Settings",
    # Exceptions: base
    "JobrotaError",
    # Exceptions: config
    "ConfigError",
    # Exceptions: storage
    "StorageError",
    "EntryNotFoundError",
    "JobNotFoundError",
    "AccountNotFoundError",
    "InvalidTransitionError",
    "ConcurrentClaimConflict",
    # Exceptions: execution
    "ExecutionError",
    "RateLimitError",
    "AuthenticationError",
    "TransientExecutionError",
    "PermanentJobError",
    # Exceptions: selection / billing / orchestration
    "NoEligibleAccountError",
    "BillingError",
    "InsufficientCreditsError",
    "JobCreationError",
    "SchedulerError",
]
