"""Scheduling loop, worker pool, engine facade, metrics, and process wiring.

Public API
----------
* :class:`~jobrota.orchestrator.engine.SchedulingEngine` — facade owning
  every component; job creation and the administrative surface.
* :class:`~jobrota.orchestrator.scheduler.SchedulerLoop` — event-driven
  claim-and-dispatch loop.
* :class:`~jobrota.orchestrator.worker_pool.WorkerPool` — bounded pool of
  concurrent executions with a hard timeout.
* :func:`~jobrota.orchestrator.runner.open_engine` /
  :func:`~jobrota.orchestrator.runner.run_continuous` — process wiring.
* :class:`~jobrota.orchestrator.metrics.SchedulerStats` and the stats /
  heartbeat file writers.
"""

from jobrota.orchestrator.engine import SchedulingEngine
from jobrota.orchestrator.metrics import (
    SchedulerStats,
    TickStats,
    write_heartbeat,
    write_stats_file,
)
from jobrota.orchestrator.runner import open_engine, run_continuous
from jobrota.orchestrator.scheduler import SchedulerLoop
from jobrota.orchestrator.worker_pool import WorkerPool

__all__ = [
    # Facade
    "SchedulingEngine",
    # Loop and pool
    "SchedulerLoop",
    "WorkerPool",
    # Metrics
    "SchedulerStats",
    "TickStats",
    "write_heartbeat",
    "write_stats_file",
    # Process wiring
    "open_engine",
    "run_continuous",
]
