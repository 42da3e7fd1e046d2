"""Cartpilot core domain models.

This module defines the purchase-task model shared by the scheduler, the
orchestrator, the checkout state machine, and the notification layer.

A task has two halves:

* :class:`TaskSpec`: the immutable identity of a purchase attempt (what to
  buy, where, how many, at what price ceiling).  Frozen pydantic model,
  validated on construction and loaded straight from the tasks JSON file.
* :class:`Task`: the mutable run state wrapped around a spec (status,
  attempt counter, last failure, current resource binding).  A plain
  dataclass, because it is mutated in place by exactly one owner at a time.

Typical usage::

    from cartpilot.core.models import FulfillmentMode, Priority, Task, TaskSpec

    spec = TaskSpec(
        id="ps5-costco",
        retailer="costco",
        item_ref="https://www.costco.com/playstation-5.product.100.html",
        quantity=1,
        max_price=549.99,
        mode=FulfillmentMode.MONITOR,
        priority=Priority.HIGH,
    )
    task = Task(spec=spec)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from pydantic import BaseModel, Field, field_validator

from cartpilot.core.failures import FailureKind

__all__ = [
    "Priority",
    "PRIORITY_RANK",
    "FulfillmentMode",
    "TaskStatus",
    "TERMINAL_STATUSES",
    "TaskSpec",
    "Task",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Priority(StrEnum):
    """Admission priority of a task.  ``high`` tasks start before ``normal``."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


#: Heap ordering rank; lower ranks are dequeued first.
PRIORITY_RANK: Final[dict[Priority, int]] = {
    Priority.HIGH: 0,
    Priority.NORMAL: 1,
    Priority.LOW: 2,
}


class FulfillmentMode(StrEnum):
    """How a task reacts to an out-of-stock item.

    * ``instant``: fail immediately with ``not_in_stock``.
    * ``monitor``: poll the item with jittered delays until it comes back
      or the monitoring budget is spent.
    """

    INSTANT = "instant"
    MONITOR = "monitor"


class TaskStatus(StrEnum):
    """Lifecycle status of a task as seen by the submission surface."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Immutable identity
# ---------------------------------------------------------------------------


class TaskSpec(BaseModel):
    """Validated, immutable description of one purchase attempt.

    Attributes:
        id: Unique task identifier (non-empty).
        retailer: Lower-case retailer tag; also the ban *scope* used by the
            resource pools (e.g. ``"costco"``).
        item_ref: Retailer-specific item reference, usually a product URL.
        quantity: Units to add to the cart (≥ 1).
        max_price: Highest acceptable unit price; ``None`` = no ceiling.
        mode: :class:`FulfillmentMode` for out-of-stock handling.
        priority: Admission :class:`Priority`.
        region: Optional geographic tag; when set, only resources carrying
            the same tag are eligible.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, description="Unique task identifier.")
    retailer: str = Field(..., min_length=1, description="Retailer tag / ban scope.")
    item_ref: str = Field(..., min_length=1, description="Item reference or URL.")
    quantity: int = Field(default=1, ge=1, description="Units to purchase.")
    max_price: float | None = Field(
        default=None,
        gt=0,
        description="Maximum acceptable unit price; None for no ceiling.",
    )
    mode: FulfillmentMode = Field(
        default=FulfillmentMode.INSTANT,
        description="Out-of-stock handling mode.",
    )
    priority: Priority = Field(default=Priority.NORMAL, description="Admission priority.")
    region: str | None = Field(default=None, description="Required resource region tag.")

    @field_validator("retailer", mode="before")
    @classmethod
    def _normalise_retailer(cls, v: object) -> object:
        """Retailer tags are case-insensitive; store them lower-cased."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("region", mode="before")
    @classmethod
    def _blank_region_to_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ---------------------------------------------------------------------------
# Mutable run state
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Task:
    """Mutable run state of a purchase task.

    Owned by the scheduler while queued, by the orchestrator (and its
    checkout run) while running, and by the scheduler's terminal store once
    finished.  Never shared between two owners at once.

    Attributes:
        spec: The immutable :class:`TaskSpec`.
        status: Current :class:`TaskStatus`.
        attempts: Number of counted attempts so far.  Only ever increases.
        last_failure: Classification of the most recent failed run.
        last_error: Human-readable detail of the most recent failure.
        account_id: Account bound to the current run, if any.
        proxy_id: Proxy bound to the current run, if any.
        order_reference: Retailer order id after a successful checkout.
        not_before: Monotonic timestamp before which the task is not eligible.
        waiting_since: Monotonic timestamp of the first resource-exhaustion
            requeue of the current wait, or ``None`` when not waiting.
        cancel_requested: Cooperative cancellation flag, checked between
            stages by the checkout run.
        created_at: UTC creation timestamp.
        updated_at: UTC timestamp of the last status change.
    """

    spec: TaskSpec
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    last_failure: FailureKind | None = None
    last_error: str = ""
    account_id: str | None = None
    proxy_id: str | None = None
    order_reference: str | None = None
    not_before: float = 0.0
    waiting_since: float | None = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def id(self) -> str:
        """Shortcut for ``task.spec.id``."""
        return self.spec.id

    @property
    def is_terminal(self) -> bool:
        """``True`` once the task reached a terminal status."""
        return self.status in TERMINAL_STATUSES

    def set_status(self, status: TaskStatus) -> None:
        """Update :attr:`status` and bump :attr:`updated_at`."""
        self.status = status
        self.updated_at = _utcnow()

    def record_failure(self, kind: FailureKind, detail: str = "") -> None:
        """Remember the most recent failure classification and detail."""
        self.last_failure = kind
        self.last_error = detail

    def clear_binding(self) -> None:
        """Forget the account/proxy ids of a finished run."""
        self.account_id = None
        self.proxy_id = None
