"""Adapter factories and the retailer → factory registry.

An **adapter factory** is any callable
``(task, account_lease, proxy_lease) -> RetailerAdapter``.  The orchestrator
calls it once per run and enters the returned adapter with ``async with``.

:class:`AdapterRegistry` is itself an adapter factory: it dispatches on
``task.spec.retailer`` to the factory registered for that tag.

The CLI loads the factory named by ``ADAPTER_FACTORY`` (``"module:callable"``)
through :func:`load_factory`.  The named callable takes no arguments and
returns an adapter factory, typically a populated registry::

    # myproject/adapters.py
    def build() -> AdapterRegistry:
        registry = AdapterRegistry()
        registry.register("costco", costco_factory(MyPlaywrightLauncher()))
        return registry

    # .env
    ADAPTER_FACTORY=myproject.adapters:build
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from cartpilot.core.exceptions import ConfigError, OrchestratorError
from cartpilot.retailers.base import RetailerAdapter
from cartpilot.retailers.browser import BrowserLauncher
from cartpilot.retailers.costco import CostcoAdapter

if TYPE_CHECKING:
    from cartpilot.core.models import Task
    from cartpilot.pool.resources import Lease

__all__ = [
    "AdapterFactory",
    "AdapterRegistry",
    "costco_factory",
    "load_factory",
]

logger = logging.getLogger(__name__)

AdapterFactory = Callable[["Task", "Lease", "Lease"], RetailerAdapter]


class AdapterRegistry:
    """Maps lower-case retailer tags to adapter factories."""

    def __init__(self) -> None:
        self._factories: dict[str, AdapterFactory] = {}

    def register(self, retailer: str, factory: AdapterFactory) -> None:
        """Register *factory* for *retailer*, replacing any previous one."""
        key = retailer.strip().lower()
        if key in self._factories:
            logger.info("Replacing adapter factory for %s.", key)
        self._factories[key] = factory

    def retailers(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, retailer: object) -> bool:
        return isinstance(retailer, str) and retailer.lower() in self._factories

    def __call__(self, task: Task, account_lease: Lease, proxy_lease: Lease) -> RetailerAdapter:
        """Build the adapter for *task*'s retailer.

        Raises:
            OrchestratorError: If no factory is registered for the retailer.
        """
        factory = self._factories.get(task.spec.retailer)
        if factory is None:
            raise OrchestratorError(f"No adapter registered for retailer {task.spec.retailer!r}.")
        return factory(task, account_lease, proxy_lease)


def costco_factory(launcher: BrowserLauncher, *, place_order: bool = True) -> AdapterFactory:
    """Return a factory building :class:`CostcoAdapter` instances on *launcher*."""

    def _build(task: Task, account_lease: Lease, proxy_lease: Lease) -> RetailerAdapter:
        return CostcoAdapter(
            launcher,
            proxy_lease.payload,
            account_lease.session_blob,
            place_order=place_order,
        )

    return _build


def load_factory(path: str) -> AdapterFactory:
    """Import ``"package.module:callable"`` and call it to get a factory.

    Raises:
        ConfigError: If the path is malformed, the import fails, or the
            result is not callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Adapter factory must look like 'package.module:callable', got {path!r}.")
    try:
        module = importlib.import_module(module_name)
        builder = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Cannot import adapter factory {path!r}: {exc}") from exc

    factory = builder()
    if not callable(factory):
        raise ConfigError(f"Adapter factory {path!r} returned a non-callable {factory!r}.")
    logger.info("Loaded adapter factory from %s.", path)
    return factory
