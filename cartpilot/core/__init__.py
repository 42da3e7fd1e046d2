"""Core domain models, settings, logging configuration, and shared utilities."""

from cartpilot.core import events
from cartpilot.core.criteria import AcquireCriteria
from cartpilot.core.exceptions import (
    AdapterError,
    CartpilotError,
    ConfigError,
    DuplicateTaskError,
    NoResourceAvailableError,
    NotificationError,
    NotLeasedError,
    OrchestratorError,
    PoolError,
    RetailerFlowError,
    SchedulerError,
    StorageError,
    UnknownResourceError,
    UnknownTaskError,
    WebhookError,
    WebhookRateLimitError,
)
from cartpilot.core.failures import FATAL_KINDS, RETRYABLE_KINDS, FailureKind, is_fatal, is_retryable
from cartpilot.core.logging_config import JsonFormatter, configure_logging, task_log_context
from cartpilot.core.models import (
    FulfillmentMode,
    Priority,
    Task,
    TaskSpec,
    TaskStatus,
)
from cartpilot.core.run_context import RunContext

# Settings pulls in cartpilot.pool, which imports the modules above.
from cartpilot.core.settings import Settings  # noqa: E402

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    "task_log_context",
    "events",
    # Domain models
    "Task",
    "TaskSpec",
    "TaskStatus",
    "Priority",
    "FulfillmentMode",
    "AcquireCriteria",
    "RunContext",
    # Settings
    "Settings",
    # Failure taxonomy
    "FailureKind",
    "RETRYABLE_KINDS",
    "FATAL_KINDS",
    "is_retryable",
    "is_fatal",
    # Exceptions: base
    "CartpilotError",
    # Exceptions: config
    "ConfigError",
    # Exceptions: pool
    "PoolError",
    "NoResourceAvailableError",
    "NotLeasedError",
    "UnknownResourceError",
    # Exceptions: scheduler
    "SchedulerError",
    "DuplicateTaskError",
    "UnknownTaskError",
    # Exceptions: adapter
    "AdapterError",
    "RetailerFlowError",
    # Exceptions: storage
    "StorageError",
    # Exceptions: notification
    "NotificationError",
    "WebhookError",
    "WebhookRateLimitError",
    # Exceptions: orchestrator
    "OrchestratorError",
]
