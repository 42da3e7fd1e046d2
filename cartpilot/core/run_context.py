"""Runtime context for a single Cartpilot execution.

Encapsulates the user-selected operating modes that alter behaviour without
changing any configuration values.  A single :class:`RunContext` instance is
created in :mod:`cartpilot.__main__` and threaded through the orchestrator
and the notifier.

Current flags
-------------
dry_run
    Run everything as normal but **log** notifier payloads instead of
    posting them to the webhook.  Useful for local development.

notify_retries
    Also emit notifier events for transient retries.  By default only
    terminal outcomes (success, permanent failure, cancellation) notify;
    retries are logged only.

Typical usage::

    from cartpilot.core.run_context import RunContext

    ctx = RunContext(dry_run=args.dry_run, notify_retries=settings.notify_retries)

    if not ctx.should_post:
        logger.info("[dry-run] %s", text)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

__all__ = ["RunContext"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    """Immutable container for per-run operating-mode flags.

    Attributes:
        dry_run: When ``True``, notifier events are formatted and logged but
            never posted.
        notify_retries: When ``True``, transient retries also produce
            (non-urgent) notifier events.
    """

    dry_run: bool = field(default=False)
    notify_retries: bool = field(default=False)

    @property
    def should_post(self) -> bool:
        """Return ``True`` if the notifier should actually call the webhook."""
        return not self.dry_run

    @property
    def mode_label(self) -> str:
        """Human-readable label for the current mode: ``"dry-run"`` or ``"live"``."""
        return "dry-run" if self.dry_run else "live"

    def __str__(self) -> str:
        return (
            f"RunContext(mode={self.mode_label}, "
            f"notify_retries={self.notify_retries})"
        )
