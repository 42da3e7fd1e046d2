"""Orchestrator entry-point: assemble all components and run the task list.

This module provides :func:`run_tasks`, the top-level async function invoked
by :mod:`cartpilot.__main__`.

Component wiring
----------------
Each call to :func:`run_tasks`:

1. Loads :class:`~cartpilot.core.settings.Settings` (or uses the supplied
   instance) and resolves the adapter factory (argument first, then
   ``ADAPTER_FACTORY``).
2. Parses the resources file into the account and proxy pools and the tasks
   file into a list of :class:`~cartpilot.core.models.TaskSpec`.
3. Opens the SQLite database via :func:`~cartpilot.storage.database.open_db`
   and restores persisted session blobs into the pools.
4. Enters the :class:`~cartpilot.notifiers.webhook.WebhookClient` (when a
   webhook is configured) through :class:`contextlib.AsyncExitStack`.
5. Submits every task to an :class:`~cartpilot.orchestrator.orchestrator.Orchestrator`
   and runs it until drained.
6. Tears down every resource cleanly on exit, including on exceptions.

While the orchestrator runs, a heartbeat file and a JSON stats snapshot are
rewritten every :data:`HEARTBEAT_INTERVAL_S` seconds.  ``SIGTERM`` stops
admission; runs in flight finish and the function returns normally.

Typical usage::

    import asyncio
    from cartpilot.core.run_context import RunContext
    from cartpilot.orchestrator.runner import run_tasks

    stats = asyncio.run(run_tasks(RunContext(dry_run=True)))
    print(stats.format_summary())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from contextlib import AsyncExitStack

from cartpilot.core.exceptions import ConfigError, DuplicateTaskError
from cartpilot.core.run_context import RunContext
from cartpilot.core.settings import Settings
from cartpilot.notifiers.notifier import Notifier
from cartpilot.notifiers.webhook import WebhookClient
from cartpilot.orchestrator.metrics import STATS_PATH, OrchestratorStats, write_stats_file
from cartpilot.orchestrator.orchestrator import Orchestrator
from cartpilot.orchestrator.scheduler import TaskScheduler
from cartpilot.pool.loader import build_pools, load_resource_file, load_task_file
from cartpilot.retailers.registry import AdapterFactory, load_factory
from cartpilot.storage.database import open_db
from cartpilot.storage.repository import OutcomeRepository, SessionRepository

__all__ = [
    "HEARTBEAT_PATH",
    "HEARTBEAT_INTERVAL_S",
    "run_tasks",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Health-check heartbeat
# ---------------------------------------------------------------------------

#: Path to the heartbeat file.  A container health check can treat a stale
#: timestamp as a hung process.  Override via ``CARTPILOT_HEARTBEAT_PATH``.
HEARTBEAT_PATH: str = os.environ.get("CARTPILOT_HEARTBEAT_PATH", "/tmp/cartpilot_heartbeat")

#: Seconds between heartbeat and stats-file writes.
HEARTBEAT_INTERVAL_S: float = 30.0


def _write_heartbeat(path: str = HEARTBEAT_PATH) -> None:
    """Write the current epoch timestamp; errors are logged, never raised."""
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


async def _heartbeat_loop(orchestrator: Orchestrator, stats_path: str) -> None:
    while True:
        _write_heartbeat()
        write_stats_file(orchestrator.stats, stats_path, pools=orchestrator.pools)
        await asyncio.sleep(HEARTBEAT_INTERVAL_S)


def _resolve_factory(settings: Settings, adapter_factory: AdapterFactory | None) -> AdapterFactory:
    if adapter_factory is not None:
        return adapter_factory
    if not settings.adapter_factory:
        raise ConfigError(
            "No adapter factory configured. "
            "Set ADAPTER_FACTORY=package.module:callable in .env (or env vars)."
        )
    return load_factory(settings.adapter_factory)


# ---------------------------------------------------------------------------
# Public entry-point
# ---------------------------------------------------------------------------


async def run_tasks(
    ctx: RunContext,
    settings: Settings | None = None,
    adapter_factory: AdapterFactory | None = None,
    *,
    stats_path: str = STATS_PATH,
) -> OrchestratorStats:
    """Load resources and tasks, run every task to a terminal state, and return stats.

    Args:
        ctx: Runtime operating-mode flags.
        settings: Pre-loaded settings.  If ``None``, a fresh instance is
            loaded from the environment and ``.env`` file.
        adapter_factory: Factory building retailer adapters.  If ``None``,
            the factory named by ``settings.adapter_factory`` is imported.
        stats_path: Destination of the JSON stats snapshot.

    Returns:
        The orchestrator's lifetime :class:`OrchestratorStats`.

    Raises:
        ConfigError: If the resources or tasks file is invalid, or no
            adapter factory can be resolved.
    """
    if settings is None:
        settings = Settings()

    factory = _resolve_factory(settings, adapter_factory)
    account_pool, proxy_pool = build_pools(
        load_resource_file(settings.resources_path),
        policy=settings.to_cooldown_policy(),
    )
    specs = load_task_file(settings.tasks_path)

    logger.info(
        "run_tasks starting: mode=%s tasks=%d accounts=%d proxies=%d db=%s",
        ctx.mode_label,
        len(specs),
        len(account_pool),
        len(proxy_pool),
        settings.database_path,
    )
    if not settings.webhook_configured:
        logger.warning("WEBHOOK_URL is not set; notifications are logged only.")

    conn = await open_db(settings.database_path_resolved)
    try:
        sessions = SessionRepository(conn)
        for pool in (account_pool, proxy_pool):
            loaded = pool.load_sessions(await sessions.load_all(pool.kind))
            if loaded:
                logger.info("Restored %d %s session(s).", loaded, pool.name)

        async with AsyncExitStack() as stack:
            client: WebhookClient | None = None
            if settings.webhook_configured:
                client = await stack.enter_async_context(WebhookClient(url=settings.webhook_url))
            notifier = Notifier(client=client, ctx=ctx)

            scheduler = TaskScheduler(max_attempts=settings.max_attempts)
            orchestrator = Orchestrator(
                scheduler,
                account_pool,
                proxy_pool,
                factory,
                notifier,
                settings,
                ctx,
                outcome_repo=OutcomeRepository(conn),
                session_repo=sessions,
            )
            for spec in specs:
                try:
                    orchestrator.submit(spec)
                except DuplicateTaskError as exc:
                    logger.warning("Skipping task: %s", exc)

            # ----------------------------------------------------------
            # Graceful shutdown: SIGTERM stops admission only.
            # ----------------------------------------------------------
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGTERM, orchestrator.stop)
            heartbeat = asyncio.create_task(
                _heartbeat_loop(orchestrator, stats_path),
                name="cartpilot-heartbeat",
            )
            try:
                await orchestrator.run_until_drained()
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
                with contextlib.suppress(Exception):
                    loop.remove_signal_handler(signal.SIGTERM)
                write_stats_file(orchestrator.stats, stats_path, pools=orchestrator.pools)

        logger.info("Notifications: %d sent, %d failed.", notifier.sent, notifier.failed)
        return orchestrator.stats

    finally:
        await conn.close()
        logger.debug("Database connection closed.")
