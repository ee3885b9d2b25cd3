"""Value objects for the partition manager.

Immutable objects defined by their attributes:
- Identifiers: DeviceIdentity, GpuInstanceId, ComputeInstanceId
- Placement: slot span within a device
"""

from mig_partitioner.domain.value_objects.identifiers import (
    ComputeInstanceId,
    DeviceIdentity,
    DeviceRef,
    GpuInstanceId,
    parse_device_ref,
)
from mig_partitioner.domain.value_objects.placement import Placement

__all__ = [
    "ComputeInstanceId",
    "DeviceIdentity",
    "DeviceRef",
    "GpuInstanceId",
    "parse_device_ref",
    "Placement",
]
