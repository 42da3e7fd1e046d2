"""Browser capability consumed by retailer adapters, plus humanized timing.

The engine does not ship a browser.  Adapters talk to whatever automation
engine the deployment provides through the narrow :class:`BrowserSession`
protocol; a :class:`BrowserLauncher` opens one session per run behind the
run's proxy.

Humanized timing
----------------
:func:`humanized_pause` sleeps for a random duration *d* with
``min_s ≤ d ≤ max_s`` and returns *d*.  Adapters call it between
interactions so that page actions do not fire at machine speed.  The sleep
function and the random source are injectable so tests never wait.

Typical usage::

    from cartpilot.retailers.browser import humanized_pause

    await session.navigate(url)
    await humanized_pause(2.0, 4.0)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from cartpilot.pool.resources import ProxyEndpoint

__all__ = [
    "BrowserSession",
    "BrowserLauncher",
    "Sleeper",
    "humanized_pause",
    "human_type",
    "wait_for_selector",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class BrowserSession(Protocol):
    """Minimal page-automation surface used by adapters."""

    async def navigate(self, url: str) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def type(self, selector: str, text: str) -> None: ...  # noqa: A003

    async def query(self, selector: str) -> bool:
        """Return ``True`` if *selector* matches at least one element."""
        ...

    async def text(self, selector: str) -> str | None:
        """Return the trimmed text of the first match, or ``None``."""
        ...

    async def screenshot(self) -> bytes: ...

    async def cookies(self) -> bytes:
        """Serialise the current cookie jar to an opaque blob."""
        ...

    async def load_cookies(self, blob: bytes) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class BrowserLauncher(Protocol):
    """Opens a :class:`BrowserSession` whose traffic egresses via *proxy*."""

    async def launch(self, proxy: ProxyEndpoint | None) -> BrowserSession: ...


# ---------------------------------------------------------------------------
# Humanized timing
# ---------------------------------------------------------------------------

Sleeper = Callable[[float], Awaitable[object]]


async def humanized_pause(
    min_s: float,
    max_s: float,
    *,
    sleep: Sleeper = asyncio.sleep,
    rng: random.Random | None = None,
) -> float:
    """Sleep for a uniformly random duration in ``[min_s, max_s]``.

    Args:
        min_s: Lower bound in seconds (≥ 0).
        max_s: Upper bound in seconds (≥ *min_s*).
        sleep: Awaitable sleep function; :func:`asyncio.sleep` by default.
        rng: Random source; the module-level generator by default.

    Returns:
        The duration slept.

    Raises:
        ValueError: If the bounds are negative or inverted.
    """
    if min_s < 0 or max_s < min_s:
        raise ValueError(f"Invalid pause bounds: min_s={min_s!r}, max_s={max_s!r}")
    duration = (rng or random).uniform(min_s, max_s)
    # uniform() may round past max_s for some float inputs.
    duration = min(max(duration, min_s), max_s)
    await sleep(duration)
    return duration


async def human_type(
    session: BrowserSession,
    selector: str,
    text: str,
    *,
    sleep: Sleeper = asyncio.sleep,
) -> None:
    """Focus *selector*, pause briefly, then type *text*."""
    await session.click(selector)
    await humanized_pause(0.1, 0.3, sleep=sleep)
    await session.type(selector, text)


async def wait_for_selector(
    session: BrowserSession,
    selector: str,
    timeout: float,
    *,
    poll_min: float = 0.2,
    poll_max: float = 0.5,
    sleep: Sleeper = asyncio.sleep,
) -> bool:
    """Poll for *selector* until it appears or *timeout* seconds of pauses elapse.

    Returns:
        ``True`` if the selector matched before the budget ran out.
    """
    waited = 0.0
    while True:
        if await session.query(selector):
            await humanized_pause(0.1, 0.3, sleep=sleep)
            return True
        if waited >= timeout:
            return False
        waited += await humanized_pause(poll_min, poll_max, sleep=sleep)
