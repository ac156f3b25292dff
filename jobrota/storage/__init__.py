"""SQLite-backed persistence: schema, repositories, the durable queue, and the activity log."""

from jobrota.storage.activity import ActivityLog
from jobrota.storage.database import DEFAULT_DB_PATH, IN_MEMORY, create_schema, open_db
from jobrota.storage.queue import FinalizeDisposition, FinalizeResult, QueueStore
from jobrota.storage.repository import AccountRepository, JobRepository, UsageRepository

__all__ = [
    "DEFAULT_DB_PATH",
    "IN_MEMORY",
    "open_db",
    "create_schema",
    "AccountRepository",
    "JobRepository",
    "UsageRepository",
    "QueueStore",
    "FinalizeDisposition",
    "FinalizeResult",
    "ActivityLog",
]
