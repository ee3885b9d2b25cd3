"""Domain services for the partition manager."""

from mig_partitioner.domain.services.allocator import PartitionAllocator
from mig_partitioner.domain.services.inventory import SliceInventory
from mig_partitioner.domain.services.profile_catalog import (
    A30_PROFILES,
    A100_PROFILES,
    ProfileCatalog,
)
from mig_partitioner.domain.services.reclaimer import PartitionReclaimer

__all__ = [
    "PartitionAllocator",
    "PartitionReclaimer",
    "ProfileCatalog",
    "SliceInventory",
    "A100_PROFILES",
    "A30_PROFILES",
]
