"""Cartpilot process entry-point.

Usage:
    python -m cartpilot [--dry-run] [--tasks PATH] [--resources PATH]

The orchestration logic lives in ``cartpilot.orchestrator``.  This module is
thin: it calls ``configure_logging()`` first so that every subsequent import
already has a working logger, then hands off to
:func:`~cartpilot.orchestrator.runner.run_tasks`, which runs every task in
the tasks file to a terminal state and exits.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from cartpilot.core import configure_logging
from cartpilot.core.exceptions import ConfigError
from cartpilot.core.run_context import RunContext
from cartpilot.core.settings import Settings


def main() -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    parser = argparse.ArgumentParser(
        prog="cartpilot",
        description="Resource-constrained retail purchase automation.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log notification payloads without posting them to the webhook.",
    )
    parser.add_argument(
        "--tasks",
        default=None,
        metavar="PATH",
        help="Override TASKS_PATH (JSON list of purchase tasks).",
    )
    parser.add_argument(
        "--resources",
        default=None,
        metavar="PATH",
        help="Override RESOURCES_PATH (JSON file of accounts and proxies).",
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

    args = parser.parse_args()

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"cartpilot: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)
    logger.info("Cartpilot starting up")

    # Lazy import keeps startup fast when module is imported without running.
    from cartpilot.orchestrator.runner import run_tasks  # noqa: PLC0415

    try:
        settings = Settings()
        overrides: dict[str, object] = {}
        if args.tasks:
            overrides["tasks_path"] = args.tasks
        if args.resources:
            overrides["resources_path"] = args.resources
        if overrides:
            settings = settings.model_copy(update=overrides)

        ctx = RunContext(
            dry_run=args.dry_run or settings.dry_run,
            notify_retries=settings.notify_retries,
        )
        logger.info("Run context: %s", ctx)

        stats = asyncio.run(run_tasks(ctx=ctx, settings=settings))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        sys.exit(130)

    logger.info("%s", stats.format_summary())
    sys.exit(0 if stats.failed == 0 else 2)


if __name__ == "__main__":
    main()
