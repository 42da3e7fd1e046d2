"""Retailer adapter contract, browser capability, and adapter registry."""

from cartpilot.retailers.base import (
    CartResult,
    CheckoutResult,
    LoginResult,
    RetailerAdapter,
    StageResult,
    StockResult,
)
from cartpilot.retailers.browser import BrowserLauncher, BrowserSession, humanized_pause
from cartpilot.retailers.costco import CostcoAdapter
from cartpilot.retailers.registry import (
    AdapterFactory,
    AdapterRegistry,
    costco_factory,
    load_factory,
)

__all__ = [
    # Contract
    "RetailerAdapter",
    "StageResult",
    "LoginResult",
    "StockResult",
    "CartResult",
    "CheckoutResult",
    # Browser capability
    "BrowserSession",
    "BrowserLauncher",
    "humanized_pause",
    # Adapters
    "CostcoAdapter",
    "AdapterFactory",
    "AdapterRegistry",
    "costco_factory",
    "load_factory",
]
