"""Inventory snapshots of devices and the slices living on them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from mig_partitioner.domain.entities.slice import SliceState
from mig_partitioner.domain.value_objects.identifiers import (
    ComputeInstanceId,
    DeviceIdentity,
    GpuInstanceId,
)
from mig_partitioner.domain.value_objects.placement import Placement


@dataclass(frozen=True)
class DeviceRecord:
    """A physical device as seen by the driver."""
    index: int
    identity: DeviceIdentity
    name: str
    mig_enabled: bool


@dataclass(frozen=True)
class SliceRecord:
    """A live slice found on a device.

    memory_mb and in_use come from the MIG device backing the compute
    instance; a GPU instance without one reports None and False.
    """
    device_index: int
    device: DeviceIdentity
    profile_name: str
    gi_id: GpuInstanceId
    placement: Placement
    ci_id: Optional[ComputeInstanceId] = None
    memory_mb: Optional[int] = None
    in_use: bool = False

    @property
    def state(self) -> SliceState:
        """GI_CREATED when the GPU instance has no compute instance yet."""
        return SliceState.READY if self.ci_id is not None else SliceState.GI_CREATED
