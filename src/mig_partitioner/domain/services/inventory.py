"""Slice inventory: read-only view of devices, live slices and free space."""

from __future__ import annotations

import structlog

from mig_partitioner.domain.entities.inventory import DeviceRecord, SliceRecord
from mig_partitioner.domain.errors import DeviceNotFoundError, DriverRejectedError
from mig_partitioner.domain.services.allocator import DEFAULT_ENGINE_SLOT
from mig_partitioner.domain.services.profile_catalog import ProfileCatalog
from mig_partitioner.domain.value_objects.identifiers import DeviceRef
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.ports.outbound import (
    DeviceCapabilityPort,
    DeviceHandle,
    DriverError,
    DriverNotFoundError,
    DriverVersions,
)

logger = structlog.get_logger(__name__)


class SliceInventory:
    """Enumerates what the driver currently holds.

    Only templates present in the catalog are scanned; instances created
    from other templates are invisible here.
    """

    def __init__(
        self,
        driver: DeviceCapabilityPort,
        catalog: ProfileCatalog,
        engine_slot: int = DEFAULT_ENGINE_SLOT,
    ) -> None:
        self._driver = driver
        self._catalog = catalog
        self._engine_slot = engine_slot

    def devices(self) -> list[DeviceRecord]:
        """List every device with its partitioning mode.

        Raises:
            DriverRejectedError: If enumeration fails.
        """
        records = []
        try:
            for index in range(self._driver.device_count()):
                device = self._driver.get_device_handle(index)
                records.append(
                    DeviceRecord(
                        index=index,
                        identity=self._driver.get_device_identity(device),
                        name=self._driver.get_device_name(device),
                        mig_enabled=self._driver.is_mig_enabled(device),
                    )
                )
        except DriverError as e:
            raise DriverRejectedError(f"Device enumeration failed: {e}", driver_code=e.code) from e
        return records

    def versions(self) -> DriverVersions:
        """Driver and library versions; fields the driver cannot report are None."""
        try:
            return self._driver.get_driver_versions()
        except DriverError as e:
            raise DriverRejectedError(f"Version query failed: {e}", driver_code=e.code) from e

    def slices(self) -> list[SliceRecord]:
        """List live slices on every MIG-enabled device."""
        records: list[SliceRecord] = []
        for device_record in self.devices():
            if not device_record.mig_enabled:
                logger.debug("mig_disabled_skipped", device=device_record.identity)
                continue
            records.extend(self._device_slices(device_record))
        return records

    def free_placements(self, device_ref: DeviceRef, profile_name: str) -> list[Placement]:
        """Placements where the profile could be created right now.

        Raises:
            ProfileNotFoundError: If the profile is unknown.
            DeviceNotFoundError: If the device does not resolve.
            DriverRejectedError: If a driver query fails.
        """
        profile = self._catalog.lookup(profile_name)
        device = self._resolve(device_ref)
        try:
            possible = self._driver.get_possible_placements(device, profile.instance_template_id)
            occupied = self._occupied(device)
        except DriverError as e:
            raise DriverRejectedError(
                f"Placement query failed: {e}",
                device=str(device_ref),
                profile=profile_name,
                driver_code=e.code,
            ) from e
        return [p for p in possible if not any(p.overlaps(o) for o in occupied)]

    def _resolve(self, device_ref: DeviceRef) -> DeviceHandle:
        try:
            return self._driver.get_device_handle(device_ref)
        except DriverNotFoundError as e:
            raise DeviceNotFoundError("Device does not resolve", device=str(device_ref)) from e
        except DriverError as e:
            raise DriverRejectedError(
                f"Device lookup failed: {e}", device=str(device_ref), driver_code=e.code
            ) from e

    def _templates(self) -> list[int]:
        return sorted({p.instance_template_id for p in self._catalog.profiles()})

    def _occupied(self, device: DeviceHandle) -> list[Placement]:
        placements = []
        for template_id in self._templates():
            for gi in self._driver.list_instances(device, template_id):
                placements.append(self._driver.get_instance_placement(gi))
        return placements

    def _device_slices(self, record: DeviceRecord) -> list[SliceRecord]:
        device = self._resolve(record.index)
        seen: set[int] = set()
        slices = []
        try:
            usage = {(u.gi_id, u.ci_id): u for u in self._driver.list_mig_devices(device)}
            for profile in self._catalog.profiles():
                for gi in self._driver.list_instances(device, profile.instance_template_id):
                    gi_id = self._driver.get_instance_id(gi)
                    if gi_id in seen:
                        continue
                    seen.add(gi_id)
                    placement = self._driver.get_instance_placement(gi)
                    cis = self._driver.list_sub_instances(
                        gi, profile.sub_instance_template_id, self._engine_slot
                    )
                    if not cis:
                        slices.append(
                            SliceRecord(record.index, record.identity, profile.name, gi_id, placement)
                        )
                    for ci in cis:
                        ci_id = self._driver.get_sub_instance_id(ci)
                        mig = usage.get((gi_id, ci_id))
                        slices.append(
                            SliceRecord(
                                record.index,
                                record.identity,
                                profile.name,
                                gi_id,
                                placement,
                                ci_id=ci_id,
                                memory_mb=mig.memory_mb if mig else None,
                                in_use=mig.in_use if mig else False,
                            )
                        )
        except DriverError as e:
            raise DriverRejectedError(
                f"Slice enumeration failed: {e}", device=record.identity, driver_code=e.code
            ) from e
        return slices
