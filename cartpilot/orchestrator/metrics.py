"""Cumulative orchestrator statistics.

Tracks lifetime totals across all checkout runs and provides two output
paths:

1. **Log summary**: :meth:`OrchestratorStats.format_summary` returns a
   human-readable string suitable for a single ``logger.info()`` call.
2. **JSON stats file**: :func:`write_stats_file` serialises
   :meth:`OrchestratorStats.as_dict` together with the current pool health
   to a file (default ``/tmp/cartpilot_stats.json``, overridable via
   ``CARTPILOT_STATS_PATH``).  Operators get an on-demand snapshot with
   ``cat /tmp/cartpilot_stats.json``.

Write errors are logged at WARNING level and never propagated; a stats-file
failure must not stop the orchestrator.

Typical usage::

    from cartpilot.orchestrator.metrics import OrchestratorStats, write_stats_file

    stats = OrchestratorStats()
    stats.succeeded += 1
    write_stats_file(stats, pools=[account_pool, proxy_pool])
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cartpilot.core.failures import FailureKind

if TYPE_CHECKING:
    from cartpilot.pool.pool import ResourcePool

__all__ = [
    "STATS_PATH",
    "OrchestratorStats",
    "write_stats_file",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stats file path constant
# ---------------------------------------------------------------------------

#: Destination for the JSON stats snapshot.  Override via the
#: ``CARTPILOT_STATS_PATH`` environment variable if ``/tmp`` is not writable.
STATS_PATH: str = os.environ.get("CARTPILOT_STATS_PATH", "/tmp/cartpilot_stats.json")


# ---------------------------------------------------------------------------
# Data class
# ---------------------------------------------------------------------------


@dataclass
class OrchestratorStats:
    """Lifetime counters of one orchestrator instance.

    Attributes:
        submitted: Tasks accepted by :meth:`Orchestrator.submit`.
        started: Checkout runs started (both leases obtained).
        succeeded: Tasks that finished with a placed order.
        failed: Tasks that failed permanently.
        cancelled: Tasks cancelled while queued or running.
        retried: Requeues after a retryable run failure.
        waiting_for_resources: Requeues caused by an empty pool.
        failures_by_kind: Run failures per :class:`FailureKind`, including
            retried ones.
    """

    submitted: int = 0
    started: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    retried: int = 0
    waiting_for_resources: int = 0
    failures_by_kind: Counter[str] = field(default_factory=Counter)

    _start_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _started_at: datetime = field(
        default_factory=lambda: datetime.now(UTC),
        repr=False,
    )

    @property
    def uptime_s(self) -> float:
        """Seconds since this instance was created."""
        return time.monotonic() - self._start_monotonic

    def record_failure(self, kind: FailureKind) -> None:
        self.failures_by_kind[str(kind)] += 1

    # ------------------------------------------------------------------
    # Serialisation / formatting
    # ------------------------------------------------------------------

    def format_summary(self) -> str:
        """Return a multi-line lifetime summary for logging.

        Example output::

            orchestrator stats | uptime: 0h03m12s
              submitted=4 started=6 succeeded=3 failed=1 cancelled=0
              retried=2 waiting_for_resources=5
              failures: captcha=1 not_in_stock=1 timeout=1
        """
        hours, rem = divmod(int(self.uptime_s), 3600)
        minutes, seconds = divmod(rem, 60)
        lines = [
            f"orchestrator stats | uptime: {hours}h{minutes:02d}m{seconds:02d}s",
            f"  submitted={self.submitted} started={self.started} "
            f"succeeded={self.succeeded} failed={self.failed} cancelled={self.cancelled}",
            f"  retried={self.retried} waiting_for_resources={self.waiting_for_resources}",
        ]
        if self.failures_by_kind:
            parts = " ".join(f"{k}={v}" for k, v in sorted(self.failures_by_kind.items()))
            lines.append(f"  failures: {parts}")
        return "\n".join(lines)

    def as_dict(self, pools: Iterable[ResourcePool] = ()) -> dict[str, object]:
        """Return a JSON-serialisable representation.

        Args:
            pools: Pools whose :meth:`~ResourcePool.health_snapshot` is
                included under ``"pools"``, keyed by pool name.
        """
        return {
            "started_at": self._started_at.isoformat(),
            "uptime_s": round(self.uptime_s, 1),
            "submitted": self.submitted,
            "started": self.started,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "retried": self.retried,
            "waiting_for_resources": self.waiting_for_resources,
            "failures_by_kind": dict(sorted(self.failures_by_kind.items())),
            "pools": {pool.name: pool.health_snapshot().as_dict() for pool in pools},
        }


# ---------------------------------------------------------------------------
# Stats file writer
# ---------------------------------------------------------------------------


def write_stats_file(
    stats: OrchestratorStats,
    path: str = STATS_PATH,
    *,
    pools: Iterable[ResourcePool] = (),
) -> None:
    """Write a JSON snapshot of *stats* (and pool health) to *path*.

    Errors are logged at ``WARNING`` level and never propagated.
    """
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(stats.as_dict(pools), fh, indent=2)
    except OSError:
        logger.warning("Failed to write stats file '%s'.", path, exc_info=True)
