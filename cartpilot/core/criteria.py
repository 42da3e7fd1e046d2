"""Resource acquire criteria.

Defines :class:`AcquireCriteria`, the filter a caller hands to
:meth:`~cartpilot.pool.pool.ResourcePool.acquire` to describe *which*
resource it needs.  The pool combines these static requirements with the
resource's live status (lease, cooldown, per-scope bans) when selecting.

Typical usage::

    from cartpilot.core.criteria import AcquireCriteria

    criteria = AcquireCriteria(scope="costco", required_tags={"us-west"})
    lease = await proxy_pool.acquire(criteria, task_id="ps5-costco")

    # Or derive it from a task:
    criteria = AcquireCriteria.for_task(task.spec)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from cartpilot.core.models import TaskSpec

__all__ = ["AcquireCriteria"]

logger = logging.getLogger(__name__)


class AcquireCriteria(BaseModel):
    """Static requirements for a resource acquire.

    Attributes:
        scope: Retailer scope the resource will be used against.  Resources
            banned for this scope, or whose retailer allow-list excludes it,
            are ineligible.  ``None`` means "any scope" (only global
            eligibility is checked).
        required_tags: Tags the resource must carry, all of them (e.g. a
            region such as ``"us-west"``).  Matching is case-insensitive.
    """

    model_config = {"frozen": True}

    scope: str | None = Field(None, description="Retailer scope; None = any.")
    required_tags: frozenset[str] = Field(
        default_factory=frozenset,
        description="Tags the resource must carry (all of them).",
    )

    @field_validator("scope", mode="before")
    @classmethod
    def _normalise_scope(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @field_validator("required_tags", mode="before")
    @classmethod
    def _normalise_tags(cls, v: object) -> object:
        if isinstance(v, str):
            v = [v]
        if isinstance(v, Iterable):
            return frozenset(t.strip().lower() for t in v if t and t.strip())
        return v

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def for_task(cls, spec: TaskSpec) -> AcquireCriteria:
        """Build criteria for a task: its retailer scope plus its region tag."""
        tags = {spec.region} if spec.region else set()
        return cls(scope=spec.retailer, required_tags=frozenset(tags))

    # ------------------------------------------------------------------
    # Matching helpers
    # ------------------------------------------------------------------

    def matches_tags(self, tags: Iterable[str]) -> bool:
        """Return ``True`` if *tags* contains every required tag."""
        if not self.required_tags:
            return True
        have = {t.lower() for t in tags}
        return self.required_tags <= have

    def allows_retailers(self, retailers: Iterable[str]) -> bool:
        """Return ``True`` if a resource's retailer allow-list admits :attr:`scope`.

        An empty allow-list means the resource may be used for any retailer.
        """
        allowed = {r.lower() for r in retailers}
        if not allowed or self.scope is None:
            return True
        return self.scope in allowed
