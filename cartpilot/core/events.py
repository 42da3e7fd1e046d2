"""Structured log event name constants for the Cartpilot engine.

Every key transition in the orchestrator, the pools, and the checkout state
machine emits a log record with an ``event`` field (passed via
``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode the value
surfaces as ``extra.event``, which makes structured queries trivial; in text
mode the message itself is self-describing.

Usage example::

    import logging
    from cartpilot.core import events

    logger = logging.getLogger(__name__)

    logger.info("Task queued", extra={"event": events.TASK_QUEUED})
"""

from __future__ import annotations

__all__ = [
    # Task lifecycle
    "TASK_QUEUED",
    "TASK_STARTED",
    "TASK_REQUEUED",
    "TASK_SUCCEEDED",
    "TASK_FAILED",
    "TASK_CANCELLED",
    "TASK_WAITING_FOR_RESOURCES",
    # Stage transitions
    "STAGE_TRANSITION",
    # Resource lifecycle
    "RESOURCE_ACQUIRED",
    "RESOURCE_RELEASED",
    "RESOURCE_FAILURE",
    "RESOURCE_COOLDOWN",
    "RESOURCE_BANNED",
    "POOL_EXHAUSTED",
    # Notifications
    "NOTIFY_SENT",
    "NOTIFY_ERROR",
]

# ---------------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------------

#: Task accepted by the scheduler.
TASK_QUEUED: str = "TASK_QUEUED"

#: Task bound to an account + proxy and its checkout run started.
TASK_STARTED: str = "TASK_STARTED"

#: Task pushed back into the queue after a retryable failure.
TASK_REQUEUED: str = "TASK_REQUEUED"

#: Checkout run finished with an order reference.
TASK_SUCCEEDED: str = "TASK_SUCCEEDED"

#: Task failed permanently (fatal kind or attempts exhausted).
TASK_FAILED: str = "TASK_FAILED"

#: Task cancelled by the caller.
TASK_CANCELLED: str = "TASK_CANCELLED"

#: Task requeued because no account or proxy was available.
TASK_WAITING_FOR_RESOURCES: str = "TASK_WAITING_FOR_RESOURCES"

# ---------------------------------------------------------------------------
# Stage transitions
# ---------------------------------------------------------------------------

#: A checkout run moved from one stage to the next.
STAGE_TRANSITION: str = "STAGE_TRANSITION"

# ---------------------------------------------------------------------------
# Resource lifecycle
# ---------------------------------------------------------------------------

#: A resource was leased to a task.
RESOURCE_ACQUIRED: str = "RESOURCE_ACQUIRED"

#: A lease was returned to the pool.
RESOURCE_RELEASED: str = "RESOURCE_RELEASED"

#: A failure was recorded against a resource.
RESOURCE_FAILURE: str = "RESOURCE_FAILURE"

#: A resource crossed the failure threshold and entered cooldown.
RESOURCE_COOLDOWN: str = "RESOURCE_COOLDOWN"

#: A resource was banned for a retailer scope.
RESOURCE_BANNED: str = "RESOURCE_BANNED"

#: An acquire found no eligible resource.
POOL_EXHAUSTED: str = "POOL_EXHAUSTED"

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

#: A notifier event was delivered (or logged in dry-run mode).
NOTIFY_SENT: str = "NOTIFY_SENT"

#: A notifier event could not be delivered; swallowed.
NOTIFY_ERROR: str = "NOTIFY_ERROR"
