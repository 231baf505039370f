"""allotment — persistent allocation of jobs to instances.

Several engines, in one process or many, share one SQLite file or PostgreSQL
database and agree on which instance each job belongs to::

    from allotment import Allocator

    async with Allocator("jobs.sqlite3", create_schema=True) as allocator:
        await allocator.available("worker-1")
        instance_id, persisted = await allocator.allocate("job-42")
"""

from allotment.allocator import Allocator, LifecycleEvent
from allotment.core.adapters import DatabaseConfig, DatabaseType, get_adapter
from allotment.core.errors import (
    AllocationError,
    AllotmentError,
    ConfigError,
    DatabaseConnectionError,
    EngineClosedError,
    NoInstancesError,
)
from allotment.core.settings import AllotmentSettings, get_settings
from allotment.models import AllocationResult, InstanceRecord
from allotment.placement import Placement, PlacementStrategy, hash_placement, local_only

__version__ = "0.1.0"

__all__ = [
    "Allocator",
    "LifecycleEvent",
    "AllocationResult",
    "InstanceRecord",
    "Placement",
    "PlacementStrategy",
    "hash_placement",
    "local_only",
    "AllotmentSettings",
    "get_settings",
    "DatabaseConfig",
    "DatabaseType",
    "get_adapter",
    "AllotmentError",
    "AllocationError",
    "ConfigError",
    "DatabaseConnectionError",
    "EngineClosedError",
    "NoInstancesError",
]
