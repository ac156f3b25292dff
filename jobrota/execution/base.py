"""Execution engine interface contract.

The scheduling engine never performs the actual work itself: every work
item is handed to an :class:`ExecutionEngine`, which runs it under the
chosen account and reports an :class:`~jobrota.core.models.ExecutionOutcome`.

Implementations may either *return* a failed outcome or *raise* one of the
:class:`~jobrota.core.exceptions.ExecutionError` subclasses; the worker pool
classifies exceptions (unknown ones count as transient).  Engines must be
safe to call concurrently: the worker pool runs up to
``max_concurrent_workers`` executions at once.

Typical usage::

    class EchoEngine(ExecutionEngine):
        async def execute(self, job, account, work_item):
            return ExecutionOutcome.ok({"echo": work_item})

    async with EchoEngine() as engine:
        outcome = await engine.execute(job, account, "https://example.com")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from types import TracebackType
from typing import Any

from jobrota.core.models import Account, ExecutionOutcome, Job

__all__ = ["ExecutionEngine"]

logger = logging.getLogger(__name__)


class ExecutionEngine(ABC):
    """Abstract base for everything that can execute a work item."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by this engine (no-op by default)."""

    async def __aenter__(self) -> ExecutionEngine:
        """Enter the async context manager.  Returns ``self``."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the async context manager by delegating to :meth:`close`."""
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def execute(self, job: Job, account: Account, work_item: Any) -> ExecutionOutcome:
        """Execute one work item of *job* under *account*.

        Args:
            job: The owning job (type and configuration).
            account: The account selected for this attempt, including its
                session credential.
            work_item: The entry's JSON work item value.

        Returns:
            The outcome of the attempt.

        Raises:
            RateLimitError: The site throttled the account.
            AuthenticationError: The account session was rejected.
            TransientExecutionError: A recoverable failure.
            PermanentJobError: The work item itself is invalid.
        """
