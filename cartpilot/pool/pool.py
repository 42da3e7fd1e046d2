"""Generic resource pool for accounts and proxies.

One :class:`ResourcePool` instance manages one resource kind.  It hands out
:class:`~cartpilot.pool.resources.Lease` objects to checkout runs, tracks
per-resource health through a shared
:class:`~cartpilot.pool.cooldown.CooldownPolicy`, and never gives the same
resource to two runs at once.

Concurrency
~~~~~~~~~~~
Every mutation (acquire, release, failure marks, bans, session updates) runs
under a single :class:`asyncio.Lock`.  :meth:`ResourcePool.acquire` waits
for that lock at most *timeout* seconds and reports a lock timeout as
:class:`~cartpilot.core.exceptions.NoResourceAvailableError`, so a caller
never blocks indefinitely.  :meth:`ResourcePool.health_snapshot` and
:meth:`ResourcePool.next_expiry` are read-only and take no lock.

Selection
~~~~~~~~~
Among eligible resources (not leased, not cooling down, not banned for the
requested scope or globally, retailer allowed, all required tags present)
the pool picks the one with the fewest failures in the sliding window, then
the least recently used, then the lowest id.

Typical usage::

    from cartpilot.core.criteria import AcquireCriteria
    from cartpilot.pool.pool import ResourcePool
    from cartpilot.pool.resources import ResourceKind

    pool = ResourcePool(ResourceKind.PROXY, proxies, policy=settings.to_cooldown_policy())

    lease = await pool.acquire(AcquireCriteria(scope="costco"), task_id="ps5-costco")
    try:
        ...
    finally:
        await pool.apply_damage(lease)
        await pool.release(lease.resource_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping

from cartpilot.core import events
from cartpilot.core.criteria import AcquireCriteria
from cartpilot.core.exceptions import (
    NoResourceAvailableError,
    NotLeasedError,
    UnknownResourceError,
)
from cartpilot.pool.cooldown import GLOBAL_SCOPE, CooldownPolicy
from cartpilot.pool.resources import (
    Lease,
    PoolHealth,
    Resource,
    ResourceKind,
    ResourceStatus,
)

__all__ = ["ResourcePool"]

logger = logging.getLogger(__name__)

#: Default wait for the pool lock inside :meth:`ResourcePool.acquire`.
_DEFAULT_ACQUIRE_TIMEOUT: float = 5.0


class ResourcePool:
    """Lease manager for one resource kind.

    Args:
        kind: The :class:`~cartpilot.pool.resources.ResourceKind` managed.
        resources: Initial resources.  Ids must be unique.
        policy: Cooldown rules.  Defaults to :class:`CooldownPolicy` defaults.
        clock: Callable returning a monotonic timestamp in seconds.
            Defaults to :func:`time.monotonic`.  Override in tests.

    Raises:
        ValueError: If two resources share an id or a resource's kind does
            not match the pool's.
    """

    def __init__(
        self,
        kind: ResourceKind,
        resources: Iterable[Resource] = (),
        *,
        policy: CooldownPolicy | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._kind = kind
        self._policy = policy or CooldownPolicy()
        self._clock = clock or time.monotonic
        self._lock = asyncio.Lock()
        self._resources: dict[str, Resource] = {}
        for resource in resources:
            self.add(resource)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Pool name used in logs and errors (``"account"`` or ``"proxy"``)."""
        return str(self._kind)

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    @property
    def policy(self) -> CooldownPolicy:
        return self._policy

    def add(self, resource: Resource) -> None:
        """Register *resource*.  Only valid before the pool is in use."""
        if resource.kind != self._kind:
            raise ValueError(
                f"Cannot add a {resource.kind} resource to the {self.name} pool."
            )
        if resource.id in self._resources:
            raise ValueError(f"Duplicate {self.name} id: {resource.id!r}")
        self._resources[resource.id] = resource

    def get(self, resource_id: str) -> Resource:
        """Return the pool-owned record for *resource_id*.

        Treat the result as read-only; mutate only through the pool.

        Raises:
            UnknownResourceError: If the id is not registered.
        """
        try:
            return self._resources[resource_id]
        except KeyError:
            raise UnknownResourceError(self.name, resource_id) from None

    def ids(self) -> list[str]:
        return sorted(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._resources

    # ------------------------------------------------------------------
    # Read-only views (lock-free)
    # ------------------------------------------------------------------

    def status_of(self, resource_id: str, scope: str | None = None) -> ResourceStatus:
        """Derived status of one resource for *scope* at the current instant.

        Precedence: leased, then banned, then cooldown, else active.
        """
        resource = self.get(resource_id)
        return self._status(resource, scope, self._clock())

    def _status(self, resource: Resource, scope: str | None, now: float) -> ResourceStatus:
        if resource.is_leased:
            return ResourceStatus.LEASED
        if resource.health.is_banned(scope, now):
            return ResourceStatus.BANNED
        until = resource.health.cooldown_until
        if until is not None and until > now:
            return ResourceStatus.COOLDOWN
        return ResourceStatus.ACTIVE

    def health_snapshot(self) -> PoolHealth:
        """Return counts by status plus per-scope ban counts.

        A resource banned in any scope counts under ``banned``; it counts
        under ``active`` too unless the ban is global.
        """
        now = self._clock()
        statuses: Counter[ResourceStatus] = Counter()
        by_scope: Counter[str] = Counter()
        banned = 0

        for resource in self._resources.values():
            scopes = resource.health.banned_scopes(now)
            by_scope.update(scopes)
            banned += bool(scopes)
            statuses[self._status(resource, None, now)] += 1

        return PoolHealth(
            pool=self.name,
            total=len(self._resources),
            active=statuses[ResourceStatus.ACTIVE],
            leased=statuses[ResourceStatus.LEASED],
            cooldown=statuses[ResourceStatus.COOLDOWN],
            banned=banned,
            banned_by_scope=dict(by_scope),
        )

    def next_expiry(self) -> float | None:
        """Earliest future cooldown or timed-ban deadline across the pool.

        Returns:
            A monotonic timestamp, or ``None`` when nothing is pending.
        """
        now = self._clock()
        deadlines = [
            d
            for d in (self._policy.next_expiry(r.health, now) for r in self._resources.values())
            if d is not None
        ]
        return min(deadlines, default=None)

    def next_expiry_in(self) -> float | None:
        """Seconds until :meth:`next_expiry`, or ``None`` when nothing is pending."""
        expiry = self.next_expiry()
        if expiry is None:
            return None
        return max(expiry - self._clock(), 0.0)

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def acquire(
        self,
        criteria: AcquireCriteria,
        *,
        task_id: str,
        timeout: float | None = _DEFAULT_ACQUIRE_TIMEOUT,
    ) -> Lease:
        """Lease the best eligible resource to *task_id*.

        Args:
            criteria: Scope and tag requirements.
            task_id: Owner of the lease, recorded on the resource.
            timeout: Maximum seconds to wait for the pool lock.  ``None``
                waits indefinitely.

        Returns:
            A :class:`~cartpilot.pool.resources.Lease` carrying the payload
            and a copy of the stored session blob.

        Raises:
            NoResourceAvailableError: If nothing is eligible, or the lock
                could not be obtained within *timeout*.
        """
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except TimeoutError:
            raise NoResourceAvailableError(
                self.name, f"pool lock not obtained within {timeout}s"
            ) from None

        try:
            now = self._clock()
            candidates = [r for r in self._resources.values() if self._eligible(r, criteria, now)]
            if not candidates:
                logger.info(
                    "No %s available for scope=%s tags=%s (task %s).",
                    self.name,
                    criteria.scope or "*",
                    sorted(criteria.required_tags) or "-",
                    task_id,
                    extra={"event": events.POOL_EXHAUSTED, "pool": self.name},
                )
                raise NoResourceAvailableError(
                    self.name,
                    f"no {self.name} eligible for scope {criteria.scope or '*'!r}",
                )

            chosen = min(
                candidates,
                key=lambda r: (len(r.health.failures), r.last_used, r.id),
            )
            chosen.leased_to = task_id
            chosen.last_used = now
        finally:
            self._lock.release()

        logger.debug(
            "Leased %s %s to task %s.",
            self.name,
            chosen.id,
            task_id,
            extra={"event": events.RESOURCE_ACQUIRED, "pool": self.name, "resource_id": chosen.id},
        )
        return Lease(
            resource_id=chosen.id,
            kind=self._kind,
            task_id=task_id,
            payload=chosen.payload,
            session_blob=chosen.session_blob,
            acquired_at=now,
        )

    def _eligible(self, resource: Resource, criteria: AcquireCriteria, now: float) -> bool:
        """Eligibility check; runs under the lock and expires state lazily."""
        if resource.is_leased:
            return False
        if self._policy.is_cooling(resource.health, now):
            return False
        if resource.health.is_banned(criteria.scope, now):
            return False
        if not criteria.allows_retailers(resource.retailers):
            return False
        if not criteria.matches_tags(resource.tags):
            return False
        self._policy.prune(resource.health, now)
        return True

    async def release(self, resource_id: str) -> None:
        """Return a leased resource to the pool.

        Raises:
            UnknownResourceError: If the id is not registered.
            NotLeasedError: If the resource is not currently leased.  No
                state is changed in that case.
        """
        async with self._lock:
            resource = self.get(resource_id)
            if not resource.is_leased:
                raise NotLeasedError(self.name, resource_id)
            owner = resource.leased_to
            resource.leased_to = None

        logger.debug(
            "Released %s %s from task %s.",
            self.name,
            resource_id,
            owner,
            extra={"event": events.RESOURCE_RELEASED, "pool": self.name, "resource_id": resource_id},
        )

    # ------------------------------------------------------------------
    # Health mutations
    # ------------------------------------------------------------------

    async def mark_failure(self, resource_id: str, scope: str | None = None) -> float | None:
        """Record one failure; may put the resource into cooldown.

        Args:
            resource_id: The failing resource.
            scope: Retailer scope the failure happened against (logged only;
                the failure window is shared across scopes).

        Returns:
            The cooldown duration if this failure tripped a cooldown.
        """
        async with self._lock:
            resource = self.get(resource_id)
            now = self._clock()
            duration = self._policy.record_failure(resource.health, now)
            in_window = len(resource.health.failures)

        if duration is None:
            logger.debug(
                "%s %s failure recorded (scope=%s, %d in window).",
                self.name.capitalize(),
                resource_id,
                scope or "*",
                in_window,
                extra={"event": events.RESOURCE_FAILURE, "pool": self.name, "resource_id": resource_id},
            )
        else:
            logger.warning(
                "%s %s entering cooldown for %.0f s (cooldown #%d).",
                self.name.capitalize(),
                resource_id,
                duration,
                resource.health.consecutive_cooldowns,
                extra={"event": events.RESOURCE_COOLDOWN, "pool": self.name, "resource_id": resource_id},
            )
        return duration

    async def mark_banned(
        self,
        resource_id: str,
        scope: str | None,
        duration: float | None = None,
    ) -> None:
        """Ban a resource for *scope* (``None`` = every scope).

        Args:
            resource_id: The banned resource.
            scope: Retailer scope; ``None`` records a global ban.
            duration: Ban length in seconds; ``None`` bans forever.  An
                existing longer ban is never shortened.
        """
        key = scope or GLOBAL_SCOPE
        async with self._lock:
            resource = self.get(resource_id)
            now = self._clock()
            until = self._policy.ban(resource.health, key, now, duration)

        logger.warning(
            "%s %s banned for scope %s (%s).",
            self.name.capitalize(),
            resource_id,
            key,
            "forever" if until is None else f"{until - now:.0f} s",
            extra={"event": events.RESOURCE_BANNED, "pool": self.name, "resource_id": resource_id},
        )

    async def record_success(self, resource_id: str) -> None:
        """Reset cooldown escalation after a lease that reported no damage."""
        async with self._lock:
            self._policy.record_success(self.get(resource_id).health)

    async def apply_damage(self, lease: Lease) -> None:
        """Apply everything a run recorded on *lease*.

        Bans first, then failure marks; a clean lease records a success.
        An updated session blob is stored back on the resource.
        """
        for ban in lease.bans:
            await self.mark_banned(lease.resource_id, ban.scope, ban.duration)
        for scope in lease.failures:
            await self.mark_failure(lease.resource_id, scope)
        if not lease.damaged:
            await self.record_success(lease.resource_id)
        if lease.session_updated:
            await self.store_session(lease.resource_id, lease.session_blob)

    # ------------------------------------------------------------------
    # Session blobs
    # ------------------------------------------------------------------

    async def store_session(self, resource_id: str, blob: bytes | None) -> None:
        """Replace the stored session blob of one resource."""
        async with self._lock:
            self.get(resource_id).session_blob = blob

    def load_sessions(self, blobs: Mapping[str, bytes]) -> int:
        """Attach persisted session blobs at startup; unknown ids are skipped.

        Returns:
            Number of blobs attached.
        """
        loaded = 0
        for resource_id, blob in blobs.items():
            resource = self._resources.get(resource_id)
            if resource is None:
                logger.debug("Skipping stored session for unknown %s %s.", self.name, resource_id)
                continue
            resource.session_blob = blob
            loaded += 1
        return loaded
