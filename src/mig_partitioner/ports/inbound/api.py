"""Inbound port interfaces for the partition manager.

Inbound ports define what the system offers to external clients.
Adapters implement them with REST, CLI, etc.
"""

from __future__ import annotations

from typing import Protocol

from mig_partitioner.domain.entities.inventory import DeviceRecord, SliceRecord
from mig_partitioner.domain.entities.slice import Slice
from mig_partitioner.domain.services.profile_catalog import ProfileCatalog
from mig_partitioner.domain.value_objects.identifiers import DeviceRef
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.ports.outbound import DriverVersions


class PartitionManagerAPI(Protocol):
    """Main API offered by the partition manager."""

    @property
    def catalog(self) -> ProfileCatalog:
        """Profiles callers may request."""
        ...

    def create_slice(self, device_ref: DeviceRef, profile_name: str, start: int) -> Slice:
        """Allocate a slice, reusing an identical live one if present.

        Args:
            device_ref: Device index or UUID.
            profile_name: Catalog profile name, e.g. "1g.5gb".
            start: First placement slot.

        Returns:
            Slice in READY state.
        """
        ...

    def delete_slice(self, device_ref: DeviceRef, gi_id: int, ci_id: int) -> None:
        """Tear a slice down, compute instance first.

        Args:
            device_ref: Device index or UUID.
            gi_id: GPU instance id.
            ci_id: Compute instance id.
        """
        ...

    def list_devices(self) -> list[DeviceRecord]:
        """List devices and their partitioning mode."""
        ...

    def list_slices(self) -> list[SliceRecord]:
        """List live slices on every partitioned device."""
        ...

    def free_placements(self, device_ref: DeviceRef, profile_name: str) -> list[Placement]:
        """Placements where a profile could be created now."""
        ...

    def driver_versions(self) -> DriverVersions:
        """Driver and management library versions."""
        ...
