"""JSON loaders for the resources file and the tasks file.

Both files are plain JSON validated with pydantic, so a typo surfaces as one
:class:`~cartpilot.core.exceptions.ConfigError` at startup instead of a
failure deep inside a checkout run.

Resources file shape::

    {
      "accounts": [
        {"id": "a1", "email": "a1@example.com", "password": "...",
         "tags": ["us-west"], "retailers": ["costco"]}
      ],
      "proxies": [
        {"id": "p1", "host": "10.0.0.5", "port": 8080,
         "username": "user", "password": "...", "tags": ["us-west"]}
      ]
    }

Tasks file shape: a JSON list of :class:`~cartpilot.core.models.TaskSpec`
objects.  ``id`` may be omitted; a fresh one is generated from the retailer.

Typical usage::

    from cartpilot.pool.loader import build_pools, load_resource_file, load_task_file

    accounts, proxies = build_pools(load_resource_file(path), policy=policy)
    specs = load_task_file(settings.tasks_path)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from cartpilot.core.exceptions import ConfigError
from cartpilot.core.ids import new_task_id
from cartpilot.core.models import TaskSpec
from cartpilot.pool.cooldown import CooldownPolicy
from cartpilot.pool.pool import ResourcePool
from cartpilot.pool.resources import (
    AccountCredentials,
    ProxyEndpoint,
    Resource,
    ResourceKind,
)

__all__ = [
    "AccountEntry",
    "ProxyEntry",
    "ResourceFile",
    "load_resource_file",
    "build_pools",
    "load_task_file",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# File models
# ---------------------------------------------------------------------------


class _EntryBase(BaseModel):
    id: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    retailers: list[str] = Field(default_factory=list)

    @field_validator("tags", "retailers")
    @classmethod
    def _lower(cls, v: list[str]) -> list[str]:
        return [item.strip().lower() for item in v if item.strip()]


class AccountEntry(_EntryBase):
    """One account in the resources file."""

    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)

    def to_resource(self) -> Resource:
        return Resource(
            id=self.id,
            kind=ResourceKind.ACCOUNT,
            payload=AccountCredentials(email=self.email, password=self.password),
            tags=frozenset(self.tags),
            retailers=frozenset(self.retailers),
        )


class ProxyEntry(_EntryBase):
    """One proxy in the resources file."""

    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    protocol: str = "http"

    def to_resource(self) -> Resource:
        return Resource(
            id=self.id,
            kind=ResourceKind.PROXY,
            payload=ProxyEndpoint(
                host=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                protocol=self.protocol,
            ),
            tags=frozenset(self.tags),
            retailers=frozenset(self.retailers),
        )


class ResourceFile(BaseModel):
    """Top-level shape of the resources file."""

    accounts: list[AccountEntry] = Field(default_factory=list)
    proxies: list[ProxyEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _read_json(path: str | Path) -> Any:
    p = Path(path)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"File not found: {p}") from None
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {p}: {exc}") from exc


def load_resource_file(path: str | Path) -> ResourceFile:
    """Read and validate the resources file.

    Raises:
        ConfigError: If the file is missing, not JSON, or fails validation.
    """
    raw = _read_json(path)
    try:
        parsed = ResourceFile.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid resources file {path}: {exc}") from exc

    logger.info(
        "Loaded %d account(s) and %d proxy(ies) from %s.",
        len(parsed.accounts),
        len(parsed.proxies),
        path,
    )
    return parsed


def build_pools(
    resource_file: ResourceFile,
    *,
    policy: CooldownPolicy | None = None,
    clock: Callable[[], float] | None = None,
) -> tuple[ResourcePool, ResourcePool]:
    """Build the ``(account_pool, proxy_pool)`` pair from a parsed file.

    Both pools share *policy* and *clock*.

    Raises:
        ConfigError: If an id is duplicated within one pool.
    """
    try:
        accounts = ResourcePool(
            ResourceKind.ACCOUNT,
            (entry.to_resource() for entry in resource_file.accounts),
            policy=policy,
            clock=clock,
        )
        proxies = ResourcePool(
            ResourceKind.PROXY,
            (entry.to_resource() for entry in resource_file.proxies),
            policy=policy,
            clock=clock,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return accounts, proxies


def load_task_file(path: str | Path) -> list[TaskSpec]:
    """Read and validate the tasks file.

    Entries without an ``id`` get one from
    :func:`~cartpilot.core.ids.new_task_id`.

    Raises:
        ConfigError: If the file is missing, not a JSON list, or an entry
            fails validation.
    """
    raw = _read_json(path)
    if not isinstance(raw, list):
        raise ConfigError(f"Tasks file {path} must contain a JSON list.")

    specs: list[TaskSpec] = []
    for index, entry in enumerate(raw):
        if isinstance(entry, dict) and not entry.get("id"):
            entry = {**entry, "id": new_task_id(str(entry.get("retailer", "task")))}
        try:
            specs.append(TaskSpec.model_validate(entry))
        except ValidationError as exc:
            raise ConfigError(f"Invalid task #{index} in {path}: {exc}") from exc

    logger.info("Loaded %d task(s) from %s.", len(specs), path)
    return specs
