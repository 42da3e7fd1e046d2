"""Reference adapter for costco.com.

Drives the Costco web flow through a :class:`~cartpilot.retailers.browser.BrowserSession`:

1. **Login**: restore stored cookies; if the home page does not show a
   signed-in account link, fill the ``LogonForm`` and save the new cookies.
2. **Stock**: open the product page; an enabled add-to-cart button means
   in stock.  The unit price is parsed from the price block when present.
3. **Cart**: set the quantity, click add-to-cart, then verify the cart page
   lists at least one product.
4. **Checkout**: click checkout, screenshot the order review, and place the
   order (or stop at review when ``place_order=False``).

Block detection
---------------
An ``Access Denied`` page means the egress IP was flagged
(``detection_blocked``).  A reCAPTCHA / PerimeterX challenge frame after
add-to-cart is reported as ``captcha``.  Both are retryable on a different
proxy; the state machine bans the current proxy for ``costco``.

Selectors live in :data:`SELECTORS` so a site change is a one-line fix.
"""

from __future__ import annotations

import logging
import re
from typing import Final

from cartpilot.core.failures import FailureKind
from cartpilot.pool.resources import AccountCredentials, ProxyEndpoint
from cartpilot.retailers.base import (
    CartResult,
    CheckoutResult,
    LoginResult,
    RetailerAdapter,
    StockResult,
)
from cartpilot.retailers.browser import (
    BrowserLauncher,
    BrowserSession,
    Sleeper,
    human_type,
    humanized_pause,
    wait_for_selector,
)

__all__ = ["CostcoAdapter", "SELECTORS", "parse_price"]

logger = logging.getLogger(__name__)

BASE_URL: Final[str] = "https://www.costco.com"

#: CSS selectors used by the flow, keyed by purpose.
SELECTORS: Final[dict[str, str]] = {
    "blocked": 'text="Access Denied"',
    "account_link": 'a[href*="/account"]',
    "sign_in_link": 'a[href*="/LogonForm"]',
    "email": "#logonId",
    "password": "#logonPassword",
    "sign_in": 'input[value="Sign In"], button[type="submit"]',
    "login_error": ".form-error, #signInError",
    "add_to_cart_enabled": (
        '#add-to-cart-btn:not([disabled]), button[data-testid="add-to-cart"]:not([disabled])'
    ),
    "add_to_cart": '#add-to-cart-btn, button[data-testid="add-to-cart"]',
    "quantity": "#minQtyText",
    "out_of_stock": '.out-of-stock-message, .oos-overlay, text="Out of Stock"',
    "price": '.your-price .value, [automation-id="productPriceOutput"]',
    "fulfillment": '[data-testid="fulfillment-option"]',
    "captcha": '.g-recaptcha, #px-captcha, iframe[src*="captcha"]',
    "cart_item": ".product-cell, .cart-item",
    "checkout": 'button[data-testid="checkout"], #checkoutBtn, a[href*="checkout"]',
    "place_order": 'button[data-testid="place-order"], #placeOrderBtn',
    "payment_error": '.payment-error, [data-testid="payment-error"]',
    "order_number": '.order-number, [data-testid="order-number"]',
}

_PRICE_RE = re.compile(r"(\d[\d,]*(?:\.\d+)?)")


def parse_price(text: str | None) -> float | None:
    """Extract a price from display text such as ``"$1,299.99"``."""
    if not text:
        return None
    match = _PRICE_RE.search(text)
    if match is None:
        return None
    return float(match.group(1).replace(",", ""))


class CostcoAdapter(RetailerAdapter):
    """Costco checkout flow over a browser session.

    Args:
        launcher: Opens the browser session on :meth:`open`.
        proxy: Egress endpoint of the proxy lease.
        session_blob: Stored cookies of the account lease, if any.
        place_order: Click the final place-order button.  ``False`` stops at
            the order review page and reports success without an order
            reference.
        place_order_timeout: Seconds to wait for the place-order button.
        sleep: Sleep function forwarded to the humanized pauses.
    """

    retailer = "costco"

    def __init__(
        self,
        launcher: BrowserLauncher,
        proxy: ProxyEndpoint | None,
        session_blob: bytes | None = None,
        *,
        place_order: bool = True,
        place_order_timeout: float = 30.0,
        base_url: str = BASE_URL,
        sleep: Sleeper | None = None,
    ) -> None:
        self._launcher = launcher
        self._proxy = proxy
        self._session_blob = session_blob
        self._place_order = place_order
        self._place_order_timeout = place_order_timeout
        self._base_url = base_url.rstrip("/")
        self._sleep_kw = {"sleep": sleep} if sleep is not None else {}
        self._session: BrowserSession | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        self._session = await self._launcher.launch(self._proxy)
        if self._session_blob:
            await self._session.load_cookies(self._session_blob)

    async def close(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()

    @property
    def session(self) -> BrowserSession:
        if self._session is None:
            raise RuntimeError("CostcoAdapter used outside its async context.")
        return self._session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _pause(self, min_s: float, max_s: float) -> None:
        await humanized_pause(min_s, max_s, **self._sleep_kw)

    async def _goto(self, path_or_url: str) -> bool:
        """Navigate and return ``False`` when the block page is shown."""
        url = path_or_url if path_or_url.startswith("http") else f"{self._base_url}{path_or_url}"
        await self.session.navigate(url)
        await self._pause(2.0, 4.0)
        if await self.session.query(SELECTORS["blocked"]):
            logger.warning("Costco returned Access Denied for %s.", url)
            return False
        return True

    async def _is_logged_in(self) -> bool:
        has_account = await self.session.query(SELECTORS["account_link"])
        has_sign_in = await self.session.query(SELECTORS["sign_in_link"])
        return has_account and not has_sign_in

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def login(self, account: AccountCredentials) -> LoginResult:
        if not await self._goto("/"):
            return LoginResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")

        if await self._is_logged_in():
            logger.debug("Stored Costco session for %s is still valid.", account.email)
            return LoginResult(detail="session restored")

        if not await self._goto("/LogonForm"):
            return LoginResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")

        await human_type(self.session, SELECTORS["email"], account.email, **self._sleep_kw)
        await self._pause(0.5, 1.0)
        await human_type(self.session, SELECTORS["password"], account.password, **self._sleep_kw)
        await self._pause(0.5, 1.0)
        await self.session.click(SELECTORS["sign_in"])
        await self._pause(3.0, 5.0)

        if await self.session.query(SELECTORS["captcha"]):
            return LoginResult(ok=False, failure=FailureKind.CAPTCHA, detail="captcha on sign-in")

        if not await self._is_logged_in():
            reason = await self.session.text(SELECTORS["login_error"])
            return LoginResult(
                ok=False,
                failure=FailureKind.ACCOUNT_LOCKED,
                detail=reason or "sign-in rejected",
            )

        logger.info("Signed in to Costco as %s.", account.email)
        return LoginResult(session_blob=await self.session.cookies(), detail="signed in")

    async def check_stock(self, item_ref: str) -> StockResult:
        if not await self._goto(item_ref):
            return StockResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")

        price = parse_price(await self.session.text(SELECTORS["price"]))
        if await self.session.query(SELECTORS["add_to_cart_enabled"]):
            options = ("ship",)
            if await self.session.query(SELECTORS["fulfillment"]):
                label = await self.session.text(SELECTORS["fulfillment"])
                options = (label.lower(),) if label else options
            return StockResult(in_stock=True, price=price, fulfillment_options=options)

        detail = "out of stock" if await self.session.query(SELECTORS["out_of_stock"]) else "no add-to-cart button"
        return StockResult(in_stock=False, price=price, detail=detail)

    async def add_to_cart(self, item_ref: str, quantity: int) -> CartResult:
        if not await self.session.query(SELECTORS["add_to_cart_enabled"]):
            if not await self._goto(item_ref):
                return CartResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")
            if not await self.session.query(SELECTORS["add_to_cart_enabled"]):
                return CartResult(ok=False, failure=FailureKind.NOT_IN_STOCK, detail="add-to-cart disabled")

        if quantity > 1 and await self.session.query(SELECTORS["quantity"]):
            await human_type(self.session, SELECTORS["quantity"], str(quantity), **self._sleep_kw)

        await self.session.click(SELECTORS["add_to_cart"])
        await self._pause(2.0, 4.0)

        if await self.session.query(SELECTORS["captcha"]):
            logger.warning("CAPTCHA after add-to-cart for %s.", item_ref)
            return CartResult(ok=False, failure=FailureKind.CAPTCHA, detail="captcha after add-to-cart")

        if not await self._goto("/CheckoutCartDisplayView"):
            return CartResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")

        if not await self.session.query(SELECTORS["cart_item"]):
            return CartResult(ok=False, failure=FailureKind.TRANSIENT_ERROR, detail="cart empty after add")
        return CartResult(detail="added")

    async def checkout(self, account: AccountCredentials) -> CheckoutResult:
        if not await self.session.query(SELECTORS["checkout"]):
            return CheckoutResult(
                ok=False,
                failure=FailureKind.TRANSIENT_ERROR,
                detail="checkout button not found",
                screenshot=await self.session.screenshot(),
            )

        await self.session.click(SELECTORS["checkout"])
        await self._pause(3.0, 5.0)
        if await self.session.query(SELECTORS["blocked"]):
            return CheckoutResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")

        review = await self.session.screenshot()
        found = await wait_for_selector(
            self.session,
            SELECTORS["place_order"],
            self._place_order_timeout,
            **self._sleep_kw,
        )
        if not found:
            return CheckoutResult(
                ok=False,
                failure=FailureKind.TIMEOUT,
                detail="place-order button not found",
                screenshot=review,
            )

        if not self._place_order:
            logger.info("Order review reached for %s; manual placement required.", account.email)
            return CheckoutResult(detail="ready for manual order placement", screenshot=review)

        await self.session.click(SELECTORS["place_order"])
        await self._pause(3.0, 5.0)

        if await self.session.query(SELECTORS["payment_error"]):
            reason = await self.session.text(SELECTORS["payment_error"])
            return CheckoutResult(
                ok=False,
                failure=FailureKind.PAYMENT_DECLINED,
                detail=reason or "payment declined",
                screenshot=review,
            )

        order_ref = await self.session.text(SELECTORS["order_number"])
        return CheckoutResult(order_reference=order_ref, detail="order placed", screenshot=review)
