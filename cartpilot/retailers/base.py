"""Retailer adapter contract and the result types it returns.

Every retailer integration subclasses :class:`RetailerAdapter` and implements
the four stage methods the checkout state machine drives:
:meth:`~RetailerAdapter.login`, :meth:`~RetailerAdapter.check_stock`,
:meth:`~RetailerAdapter.add_to_cart`, and :meth:`~RetailerAdapter.checkout`.

Design decisions
----------------
* **Result objects, not exceptions**: each stage returns a frozen result
  carrying ``ok`` and, when unsuccessful, a normalised
  :class:`~cartpilot.core.failures.FailureKind`.  Adapters that prefer to
  raise may raise :class:`~cartpilot.core.exceptions.RetailerFlowError`
  instead; the state machine treats both the same way.  Any other exception
  is classified ``transient_error`` by the state machine.
* **One adapter per run**: the orchestrator's adapter factory builds an
  adapter bound to one task and its two leases, and the run owns it for its
  whole lifetime.  Adapters never touch the resource pools.
* **Async context manager built-in**: adapters that hold a browser session
  release it in :meth:`~RetailerAdapter.close`.

Typical usage::

    from cartpilot.retailers.base import RetailerAdapter, StockResult


    class MyShopAdapter(RetailerAdapter):
        retailer = "myshop"

        async def check_stock(self, item_ref: str) -> StockResult:
            ...

    async with MyShopAdapter(...) as adapter:
        stock = await adapter.check_stock(spec.item_ref)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import TracebackType
from typing import ClassVar

from cartpilot.core.failures import FailureKind
from cartpilot.pool.resources import AccountCredentials

__all__ = [
    "StageResult",
    "LoginResult",
    "StockResult",
    "CartResult",
    "CheckoutResult",
    "RetailerAdapter",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageResult:
    """Common shape of every stage result.

    Attributes:
        ok: ``True`` if the stage completed as intended.
        failure: Normalised classification when ``ok`` is ``False``.
        detail: Free-form text for logs and notifications.
    """

    ok: bool = True
    failure: FailureKind | None = None
    detail: str = ""

    def __post_init__(self) -> None:
        if not self.ok and self.failure is None:
            raise ValueError(f"{type(self).__name__}(ok=False) requires a failure kind.")


@dataclass(frozen=True)
class LoginResult(StageResult):
    """Outcome of :meth:`RetailerAdapter.login`.

    Attributes:
        session_blob: Fresh session state (cookies) after a successful
            login, saved back onto the account lease.  ``None`` keeps the
            stored blob.
    """

    session_blob: bytes | None = None


@dataclass(frozen=True)
class StockResult(StageResult):
    """Outcome of :meth:`RetailerAdapter.check_stock`.

    ``ok`` only says the page could be read; availability is
    :attr:`in_stock`.

    Attributes:
        in_stock: Whether the item can be added to a cart right now.
        price: Unit price shown on the page, if it could be read.
        fulfillment_options: Delivery options offered (e.g. ``"ship"``).
    """

    in_stock: bool = False
    price: float | None = None
    fulfillment_options: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CartResult(StageResult):
    """Outcome of :meth:`RetailerAdapter.add_to_cart`."""


@dataclass(frozen=True)
class CheckoutResult(StageResult):
    """Outcome of :meth:`RetailerAdapter.checkout`.

    Attributes:
        order_reference: Retailer order id after a placed order.
        screenshot: Order-review screenshot, if one was taken.
    """

    order_reference: str | None = None
    screenshot: bytes | None = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------


class RetailerAdapter(ABC):
    """Abstract base for retailer-specific checkout flows.

    Subclasses **must** declare :attr:`retailer` and implement the four
    stage methods.  Override :meth:`close` to release browser resources.

    Attributes:
        retailer: Lower-case retailer tag; matches ``TaskSpec.retailer``.
    """

    retailer: ClassVar[str]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:  # noqa: B027
        """Acquire long-lived resources (e.g. launch a browser).  No-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by this adapter.  No-op by default."""

    async def __aenter__(self) -> RetailerAdapter:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def login(self, account: AccountCredentials) -> LoginResult:
        """Sign in with *account*, reusing a stored session when possible.

        Report a locked or rejected account as ``account_locked`` and a
        blocked egress IP as ``detection_blocked``.
        """

    @abstractmethod
    async def check_stock(self, item_ref: str) -> StockResult:
        """Read availability and price of *item_ref*."""

    @abstractmethod
    async def add_to_cart(self, item_ref: str, quantity: int) -> CartResult:
        """Put *quantity* units of *item_ref* into the cart."""

    @abstractmethod
    async def checkout(self, account: AccountCredentials) -> CheckoutResult:
        """Complete checkout for the current cart and return the order reference.

        Report a refused payment as ``payment_declined``; a slow or broken
        page as ``timeout`` or ``transient_error``.
        """
