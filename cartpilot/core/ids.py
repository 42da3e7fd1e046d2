"""Identifier helpers shared by every layer.

Two id shapes are used across Cartpilot:

* **Task ids**: caller-supplied strings.  When a tasks file entry omits
  one, :func:`new_task_id` generates ``"<retailer>-<8 hex chars>"``.
* **Resource keys**: the storage layer persists session blobs under
  ``"<kind>:<resource_id>"`` (e.g. ``"account:alice"``) so an account and a
  proxy that happen to share an id never collide.

Typical usage::

    from cartpilot.core.ids import new_task_id, resource_key

    task_id = new_task_id("costco")            # "costco-3fa2b1c0"
    key = resource_key("account", "alice")     # "account:alice"
"""

from __future__ import annotations

import logging
import uuid

__all__ = [
    "RESOURCE_KEY_SEPARATOR",
    "new_task_id",
    "resource_key",
]

logger = logging.getLogger(__name__)

#: Separator between resource kind and resource id.
RESOURCE_KEY_SEPARATOR: str = ":"


def new_task_id(retailer: str) -> str:
    """Return a fresh task id of the form ``"<retailer>-<8 hex chars>"``."""
    return f"{retailer.strip().lower()}-{uuid.uuid4().hex[:8]}"


def resource_key(kind: str, resource_id: str) -> str:
    """Return the storage key for a resource.

    Example::

        assert resource_key("proxy", "p1") == "proxy:p1"
    """
    return f"{kind}{RESOURCE_KEY_SEPARATOR}{resource_id}"
