"""Domain entities for the partition manager.

Entities represent core objects with identity and lifecycle:
- Profile: named GI/CI template pair
- Slice: GI + CI pair on one device, with explicit lifecycle state
- Inventory records: read-only snapshots of devices and live slices
"""

from mig_partitioner.domain.entities.inventory import (
    DeviceRecord,
    SliceRecord,
)
from mig_partitioner.domain.entities.profile import Profile
from mig_partitioner.domain.entities.slice import (
    Slice,
    SliceState,
    SliceStateError,
)

__all__ = [
    # Profile
    "Profile",
    # Slice
    "Slice",
    "SliceState",
    "SliceStateError",
    # Inventory
    "DeviceRecord",
    "SliceRecord",
]
