"""Cartpilot exception taxonomy.

Every custom exception inherits from :class:`CartpilotError`.  Exceptions are
organised by architectural layer so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    CartpilotError
    ├── ConfigError
    ├── PoolError
    │   ├── NoResourceAvailableError
    │   ├── NotLeasedError
    │   └── UnknownResourceError
    ├── SchedulerError
    │   ├── DuplicateTaskError
    │   └── UnknownTaskError
    ├── AdapterError
    │   └── RetailerFlowError
    ├── StorageError
    ├── NotificationError
    │   └── WebhookError
    │       └── WebhookRateLimitError
    └── OrchestratorError

Exceptions carry *mechanics* (which pool, which task id).  The business-level
classification of a failed purchase attempt lives in
:class:`~cartpilot.core.failures.FailureKind`; only
:class:`RetailerFlowError` bridges the two.

Usage:

    from cartpilot.core.exceptions import NoResourceAvailableError

    raise NoResourceAvailableError("proxy", "no proxy eligible for 'costco'")
"""

from __future__ import annotations

import logging

from cartpilot.core.failures import FailureKind

__all__ = [
    "CartpilotError",
    # Config
    "ConfigError",
    # Pool
    "PoolError",
    "NoResourceAvailableError",
    "NotLeasedError",
    "UnknownResourceError",
    # Scheduler
    "SchedulerError",
    "DuplicateTaskError",
    "UnknownTaskError",
    # Adapter
    "AdapterError",
    "RetailerFlowError",
    # Storage
    "StorageError",
    # Notification
    "NotificationError",
    "WebhookError",
    "WebhookRateLimitError",
    # Orchestrator
    "OrchestratorError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class CartpilotError(Exception):
    """Root exception for all Cartpilot errors.

    Catch this to handle any application-level error uniformly.  Prefer
    catching layer-specific subclasses wherever possible for precise error
    handling.
    """


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(CartpilotError):
    """Raised when the application configuration is invalid or incomplete.

    Examples:
        - The resources file is missing or not valid JSON.
        - ``ADAPTER_FACTORY`` does not point at an importable callable.
    """


# ---------------------------------------------------------------------------
# Pool layer
# ---------------------------------------------------------------------------


class PoolError(CartpilotError):
    """Base class for resource-pool errors.

    Args:
        pool: Name of the pool that raised (``"account"`` or ``"proxy"``).
        message: Human-readable error description.
    """

    def __init__(self, pool: str, message: str) -> None:
        self.pool = pool
        super().__init__(f"[{pool} pool] {message}")


class NoResourceAvailableError(PoolError):
    """Raised when no resource satisfies an acquire request.

    This is a *retryable* condition: the orchestrator requeues the task with
    a short backoff instead of failing it.
    """


class NotLeasedError(PoolError):
    """Raised when releasing a resource that is not currently leased.

    Args:
        pool: Pool name.
        resource_id: The resource that was not leased.
    """

    def __init__(self, pool: str, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(pool, f"resource {resource_id!r} is not leased")


class UnknownResourceError(PoolError):
    """Raised when a resource id is not registered in the pool."""

    def __init__(self, pool: str, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(pool, f"unknown resource {resource_id!r}")


# ---------------------------------------------------------------------------
# Scheduler layer
# ---------------------------------------------------------------------------


class SchedulerError(CartpilotError):
    """Base class for task-scheduler errors."""


class DuplicateTaskError(SchedulerError):
    """Raised when a task id cannot be accepted again.

    Either the id is queued or running, or it already failed permanently
    after exhausting its attempts.

    Args:
        task_id: The duplicate task identifier.
        reason: Why the id was refused.
    """

    def __init__(self, task_id: str, reason: str = "already queued or running") -> None:
        self.task_id = task_id
        super().__init__(f"Task {reason}: {task_id!r}")


class UnknownTaskError(SchedulerError):
    """Raised when an operation references a task id the scheduler never saw."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Unknown task: {task_id!r}")


# ---------------------------------------------------------------------------
# Adapter layer
# ---------------------------------------------------------------------------


class AdapterError(CartpilotError):
    """Base class for errors raised by retailer adapters.

    Args:
        retailer: Retailer tag (e.g. ``"costco"``).
        message: Human-readable error description.
    """

    def __init__(self, retailer: str, message: str) -> None:
        self.retailer = retailer
        super().__init__(f"[{retailer}] {message}")


class RetailerFlowError(AdapterError):
    """Raised by an adapter that reports a classified failure as an exception.

    The checkout state machine unwraps :attr:`kind` so the classification is
    identical to returning an unsuccessful result object.

    Args:
        retailer: Retailer tag.
        kind: Normalised failure classification.
        message: Human-readable detail.
    """

    def __init__(self, retailer: str, kind: FailureKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(retailer, f"{kind}: {message}" if message else str(kind))


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(CartpilotError):
    """Raised when a database or persistence operation fails."""


# ---------------------------------------------------------------------------
# Notification layer
# ---------------------------------------------------------------------------


class NotificationError(CartpilotError):
    """Base class for notification delivery errors."""


class WebhookError(NotificationError):
    """Raised when the webhook endpoint returns an error or is unreachable.

    Args:
        message: Human-readable error description.
        status_code: HTTP status code, if available.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Webhook error{detail}: {message}")


class WebhookRateLimitError(WebhookError):
    """Raised when the webhook endpoint returns HTTP 429.

    Args:
        retry_after: Seconds to wait before retrying, as reported by the server.
    """

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(
            f"Rate limited, retry after {retry_after}s",
            status_code=429,
        )


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(CartpilotError):
    """Raised for errors originating in the orchestration layer.

    Examples:
        - ``run_forever`` called twice on the same instance.
        - No adapter registered for a task's retailer.
    """
