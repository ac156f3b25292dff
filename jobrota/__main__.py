"""Jobrota process entry-point.

Usage:
    python -m jobrota [--log-level LEVEL] [--log-format FORMAT] COMMAND

Commands:
    run               Run the scheduler until SIGTERM / Ctrl+C.
    status            Print queue counts and executing entries as JSON.
    pause JOB_ID      Stop claiming entries of a job.
    resume JOB_ID     Make a paused job's entries claimable again.
    cancel JOB_ID     Cancel a job and release credits of untouched entries.

The orchestration logic lives in ``jobrota.orchestrator``.  This module is
intentionally thin: it calls ``configure_logging()`` first so that every
subsequent import already has a working logger, then hands off to the
orchestrator.  Admin commands open the same database as a running scheduler
and never execute work themselves.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from jobrota.core import configure_logging
from jobrota.core.exceptions import ConfigError, JobrotaError
from jobrota.core.settings import Settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobrota",
        description="Multi-tenant job scheduler with account rotation.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the scheduler until SIGTERM / Ctrl+C.")
    sub.add_parser("status", help="Print queue counts and executing entries as JSON.")
    for name, text in (
        ("pause", "Stop claiming entries of a job."),
        ("resume", "Make a paused job's entries claimable again."),
        ("cancel", "Cancel a job and release credits of untouched entries."),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("job_id", help="Identifier of the job.")
    return parser


async def _admin(settings: Settings, action: Callable[[Any], Awaitable[Any]]) -> Any:
    # Lazy import keeps startup fast when the module is imported without running.
    from jobrota.orchestrator.runner import open_engine  # noqa: PLC0415

    async with open_engine(settings, require_execution_engine=False) as engine:
        return await action(engine)


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    # Configure logging BEFORE any other jobrota imports so that every module
    # obtains a correctly-configured logger on first import.
    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"jobrota: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)
    settings = Settings()

    try:
        if args.command == "run":
            from jobrota.orchestrator.runner import run_continuous  # noqa: PLC0415

            logger.info("Jobrota starting up (Ctrl+C to stop).")
            asyncio.run(run_continuous(settings))
        elif args.command == "status":
            status = asyncio.run(
                _admin(settings, lambda engine: engine.get_queue_status(from_storage=True))
            )
            print(json.dumps(status.model_dump(mode="json"), indent=2))  # noqa: T201
        else:
            actions = {
                "pause": lambda engine: engine.pause_job(args.job_id),
                "resume": lambda engine: engine.resume_job(args.job_id),
                "cancel": lambda engine: engine.cancel_job(args.job_id),
            }
            job = asyncio.run(_admin(settings, actions[args.command]))
            print(f"{job.id}: {job.status}")  # noqa: T201
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except JobrotaError as exc:
        logger.error("%s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted — exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
