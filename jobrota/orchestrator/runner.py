"""Process-level wiring: open every resource and run the engine until stopped.

:func:`open_engine` assembles a :class:`~jobrota.orchestrator.engine.SchedulingEngine`
from :class:`~jobrota.core.settings.Settings`:

1. Opens the SQLite database via :func:`~jobrota.storage.database.open_db`.
2. Builds the execution engine: the caller's, or an
   :class:`~jobrota.execution.http_engine.HttpExecutionEngine` when
   ``EXECUTION_ENGINE_URL`` is set.
3. Tears everything down in reverse order on exit through one
   :class:`contextlib.AsyncExitStack`, including on exceptions.

:func:`run_continuous` starts the scheduler and blocks until ``SIGTERM``
(e.g. ``docker stop``) or cancellation, then drains the worker pool.

Typical usage::

    import asyncio
    from jobrota.orchestrator.runner import run_continuous

    asyncio.run(run_continuous())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack

from jobrota.core.exceptions import ConfigError
from jobrota.core.settings import Settings
from jobrota.execution.base import ExecutionEngine
from jobrota.execution.http_engine import HttpExecutionEngine
from jobrota.orchestrator.engine import SchedulingEngine
from jobrota.storage.database import open_db

__all__ = ["open_engine", "run_continuous"]

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def open_engine(
    settings: Settings | None = None,
    *,
    execution_engine: ExecutionEngine | None = None,
    require_execution_engine: bool = True,
) -> AsyncIterator[SchedulingEngine]:
    """Open the database and execution engine and yield a (stopped) engine.

    Args:
        settings: Application settings.  Loaded from the environment if
            ``None``.
        execution_engine: Explicit execution engine.  When ``None``, an
            :class:`HttpExecutionEngine` is built from settings.
        require_execution_engine: When ``False`` and no execution engine is
            configured, a placeholder that refuses to run is used instead.
            Admin commands (status, pause, resume, cancel) never execute
            work and pass ``False``.

    Raises:
        ConfigError: If no execution engine is available but one is
            required.
    """
    if settings is None:
        settings = Settings()

    async with AsyncExitStack() as stack:
        if execution_engine is None:
            if settings.execution_engine_configured:
                execution_engine = HttpExecutionEngine.from_settings(settings)
            elif require_execution_engine:
                raise ConfigError(
                    "No execution engine configured. "
                    "Set EXECUTION_ENGINE_URL in .env (or env vars)."
                )
            else:
                execution_engine = _UnavailableEngine()
        await stack.enter_async_context(execution_engine)

        conn = await open_db(settings.database_path_resolved)
        stack.push_async_callback(conn.close)

        yield SchedulingEngine(conn, execution_engine, settings)
        logger.debug("Tearing down engine resources.")


async def run_continuous(
    settings: Settings | None = None,
    *,
    execution_engine: ExecutionEngine | None = None,
) -> None:
    """Run the scheduler until ``SIGTERM`` or cancellation.

    A ``SIGTERM`` handler is registered on the running loop; on the first
    signal the scheduler stops claiming work and in-flight executions get up
    to the execution timeout to finish.  The handler is removed in a
    ``finally`` block so it does not interfere with any later
    :func:`asyncio.run` call.

    Raises:
        ConfigError: If no execution engine is configured.
        asyncio.CancelledError: When the surrounding task is cancelled
            (Ctrl+C).  The engine is still stopped cleanly.
    """
    if settings is None:
        settings = Settings()

    async with open_engine(settings, execution_engine=execution_engine) as engine:
        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()

        def _request_graceful_shutdown(signame: str) -> None:
            if not stop_requested.is_set():
                logger.info("Received %s — graceful shutdown requested.", signame)
            stop_requested.set()

        loop.add_signal_handler(signal.SIGTERM, lambda: _request_graceful_shutdown("SIGTERM"))
        await engine.start()
        logger.info(
            "Jobrota running — %d worker slot(s), poll interval %.1fs, db=%s",
            settings.max_concurrent_workers,
            settings.poll_interval_seconds,
            settings.database_path,
        )
        try:
            await stop_requested.wait()
        finally:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(signal.SIGTERM)
            await engine.stop()
            logger.info("Graceful shutdown complete. %s", engine.scheduler.stats.format_summary())


class _UnavailableEngine(ExecutionEngine):
    """Placeholder for processes that only use the administrative surface."""

    async def execute(self, job, account, work_item):  # type: ignore[no-untyped-def]
        raise ConfigError("No execution engine configured in this process.")
