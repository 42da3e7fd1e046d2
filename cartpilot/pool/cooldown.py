"""Per-resource health tracking: sliding failure window, cooldown, and bans.

Keeps a marginal account or proxy from being handed out again and again.
Failures are counted in a sliding window; once the count reaches the
threshold, the resource **cools down** for a duration that grows
exponentially with each consecutive cooldown.  Independently of cooldowns, a
resource can be **banned** for one retailer scope (or all of them), either
until a deadline or forever.

State machine
~~~~~~~~~~~~~
::

    ACTIVE ──(failure_threshold within window)──▶ COOLDOWN
      ▲                                              │
      │                                              │ (cooldown_until ≤ now,
      └──────────────────────────────────────────────┘  checked lazily)

    ACTIVE ──(mark_banned(scope))──▶ BANNED for scope  (until deadline | forever)

Terminology
~~~~~~~~~~~
* **Trip**: a transition ACTIVE → COOLDOWN.
* **Cooldown duration**: ``base_cooldown × backoff_multiplier^n`` where *n*
  is the number of consecutive trips before this one, capped at
  ``max_cooldown``.  *n* resets after a clean lease (:meth:`record_success`).
* **Global ban**: a ban recorded under :data:`GLOBAL_SCOPE`, which makes the
  resource ineligible for every scope.

Expiry is never driven by a background timer: every check compares the
stored deadlines with the ``now`` value passed in by the pool, which reads
its injectable clock inside its critical section.

Typical usage::

    policy = CooldownPolicy(failure_threshold=3, failure_window=600.0)
    health = ResourceHealth()

    duration = policy.record_failure(health, now)
    if duration is not None:
        logger.warning("cooling down for %.0f s", duration)
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Final

__all__ = [
    "GLOBAL_SCOPE",
    "CooldownPolicy",
    "ResourceHealth",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Ban scope that applies to every retailer.
GLOBAL_SCOPE: Final[str] = "*"

_DEFAULT_FAILURE_THRESHOLD: Final[int] = 3
_DEFAULT_FAILURE_WINDOW: Final[float] = 600.0  # 10 minutes
_DEFAULT_BASE_COOLDOWN: Final[float] = 60.0
_DEFAULT_MAX_COOLDOWN: Final[float] = 3600.0  # 1 hour
_DEFAULT_BACKOFF_MULTIPLIER: Final[float] = 2.0


# ---------------------------------------------------------------------------
# State bag
# ---------------------------------------------------------------------------


@dataclass
class ResourceHealth:
    """Mutable health state of one resource.

    Attributes:
        failures: Monotonic timestamps of failures inside the sliding window.
        cooldown_until: Monotonic deadline of the current cooldown, or
            ``None`` when not cooling down.
        consecutive_cooldowns: Trips since the last clean lease; drives the
            exponential cooldown growth.
        bans: ``scope → deadline`` map; a ``None`` deadline is permanent.
    """

    failures: deque[float] = field(default_factory=deque)
    cooldown_until: float | None = None
    consecutive_cooldowns: int = 0
    bans: dict[str, float | None] = field(default_factory=dict)

    def is_banned(self, scope: str | None, now: float) -> bool:
        """Return ``True`` if banned globally or for *scope* at time *now*."""
        for key in (GLOBAL_SCOPE, scope):
            if key is None or key not in self.bans:
                continue
            until = self.bans[key]
            if until is None or until > now:
                return True
        return False

    def banned_scopes(self, now: float) -> list[str]:
        """Return the scopes with a ban still in force at *now*."""
        return [s for s, until in self.bans.items() if until is None or until > now]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class CooldownPolicy:
    """Failure-window and exponential-cooldown rules shared by a pool.

    Args:
        failure_threshold: Failures within the window that trip a cooldown.
        failure_window: Sliding window length in seconds.
        base_cooldown: First cooldown duration in seconds.
        max_cooldown: Hard ceiling on escalated cooldowns.
        backoff_multiplier: Factor applied per consecutive trip.
    """

    def __init__(
        self,
        failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD,
        failure_window: float = _DEFAULT_FAILURE_WINDOW,
        base_cooldown: float = _DEFAULT_BASE_COOLDOWN,
        max_cooldown: float = _DEFAULT_MAX_COOLDOWN,
        backoff_multiplier: float = _DEFAULT_BACKOFF_MULTIPLIER,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be ≥ 1, got {failure_threshold!r}.")
        if failure_window <= 0:
            raise ValueError(f"failure_window must be > 0, got {failure_window!r}.")
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.base_cooldown = base_cooldown
        self.max_cooldown = max_cooldown
        self.backoff_multiplier = backoff_multiplier

    # ------------------------------------------------------------------
    # Durations
    # ------------------------------------------------------------------

    def cooldown_duration(self, consecutive_cooldowns: int) -> float:
        """Compute the cooldown for the next trip.

        Formula: ``base × multiplier^consecutive_cooldowns`` capped at
        ``max_cooldown``.  The first trip uses the base duration.
        """
        raw = self.base_cooldown * (self.backoff_multiplier ** max(consecutive_cooldowns, 0))
        return min(raw, self.max_cooldown)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def prune(self, health: ResourceHealth, now: float) -> int:
        """Drop failures older than the window; return the remaining count."""
        horizon = now - self.failure_window
        while health.failures and health.failures[0] <= horizon:
            health.failures.popleft()
        return len(health.failures)

    def is_cooling(self, health: ResourceHealth, now: float) -> bool:
        """Return ``True`` while a cooldown is in force.

        An expired cooldown is cleared here, lazily, so the next check sees
        an active resource.
        """
        if health.cooldown_until is None:
            return False
        if health.cooldown_until > now:
            return True
        health.cooldown_until = None
        return False

    def record_failure(self, health: ResourceHealth, now: float) -> float | None:
        """Record one failure at *now*.

        Returns:
            The cooldown duration if this failure tripped a cooldown,
            otherwise ``None``.  Failures recorded while already cooling
            down are counted but never extend the current cooldown.
        """
        health.failures.append(now)
        count = self.prune(health, now)

        if self.is_cooling(health, now) or count < self.failure_threshold:
            return None

        duration = self.cooldown_duration(health.consecutive_cooldowns)
        health.cooldown_until = now + duration
        health.consecutive_cooldowns += 1
        health.failures.clear()
        return duration

    def record_success(self, health: ResourceHealth) -> None:
        """Reset cooldown escalation after a clean lease."""
        health.consecutive_cooldowns = 0

    def ban(
        self,
        health: ResourceHealth,
        scope: str,
        now: float,
        duration: float | None,
    ) -> float | None:
        """Ban *health* for *scope*; return the effective deadline.

        A new ban never shortens an existing longer (or permanent) one.
        """
        new_until = None if duration is None else now + duration
        if scope in health.bans:
            current = health.bans[scope]
            if current is None or (new_until is not None and current >= new_until):
                return current
        health.bans[scope] = new_until
        return new_until

    def next_expiry(self, health: ResourceHealth, now: float) -> float | None:
        """Earliest future deadline (cooldown or timed ban), or ``None``."""
        deadlines = [
            until
            for until in [health.cooldown_until, *health.bans.values()]
            if until is not None and until > now
        ]
        return min(deadlines, default=None)
