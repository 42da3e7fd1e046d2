"""Account and proxy resource pools with cooldown and ban tracking."""

from cartpilot.pool.cooldown import GLOBAL_SCOPE, CooldownPolicy, ResourceHealth
from cartpilot.pool.resources import (
    AccountCredentials,
    Lease,
    LeaseBan,
    PoolHealth,
    ProxyEndpoint,
    Resource,
    ResourceKind,
    ResourceStatus,
)
from cartpilot.pool.pool import ResourcePool
from cartpilot.pool.loader import (
    ResourceFile,
    build_pools,
    load_resource_file,
    load_task_file,
)

__all__ = [
    # Health policy
    "GLOBAL_SCOPE",
    "CooldownPolicy",
    "ResourceHealth",
    # Resource types
    "AccountCredentials",
    "ProxyEndpoint",
    "Resource",
    "ResourceKind",
    "ResourceStatus",
    "Lease",
    "LeaseBan",
    "PoolHealth",
    # Pool
    "ResourcePool",
    # Config files
    "ResourceFile",
    "build_pools",
    "load_resource_file",
    "load_task_file",
]
