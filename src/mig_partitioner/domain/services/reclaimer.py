"""Partition reclaimer.

Tears a slice down: compute instance first, then its GPU instance. The
order is load-bearing, a GPU instance with a live compute instance cannot
be destroyed. Partial failures are surfaced with the resulting slice
state and never retried here.
"""

from __future__ import annotations

import structlog

from mig_partitioner.domain.entities.slice import Slice, SliceState, SliceStateError
from mig_partitioner.domain.errors import (
    DeviceNotFoundError,
    DriverRejectedError,
    InstanceNotFoundError,
)
from mig_partitioner.domain.value_objects.identifiers import DeviceRef
from mig_partitioner.ports.outbound import (
    DeviceCapabilityPort,
    DriverError,
    DriverNotFoundError,
)

logger = structlog.get_logger(__name__)


class PartitionReclaimer:
    """Destroys slices in dependency order."""

    def __init__(self, driver: DeviceCapabilityPort) -> None:
        self._driver = driver

    def reclaim(self, device_ref: DeviceRef, gi_id: int, ci_id: int) -> None:
        """Destroy the compute instance, then the GPU instance.

        Args:
            device_ref: Device index or identity.
            gi_id: GPU instance id on the device.
            ci_id: Compute instance id inside the GPU instance.

        Raises:
            DeviceNotFoundError: If the device does not resolve.
            InstanceNotFoundError: If the GI or CI does not resolve.
            DriverRejectedError: If a destroy fails. ``state`` is READY when the
                CI survived (GI untouched), CI_DESTROYED when only the GI is left.
        """
        device_label = str(device_ref)
        log = logger.bind(device=device_label, gi_id=gi_id, ci_id=ci_id)

        try:
            device = self._driver.get_device_handle(device_ref)
        except DriverNotFoundError as e:
            log.warning("device_not_found")
            raise DeviceNotFoundError("Device does not resolve", device=device_label) from e
        except DriverError as e:
            raise DriverRejectedError(
                f"Device lookup failed: {e}", device=device_label, driver_code=e.code
            ) from e

        try:
            gi = self._driver.get_instance_by_id(device, gi_id)
        except DriverNotFoundError as e:
            log.warning("gpu_instance_not_found")
            raise InstanceNotFoundError(
                "GPU instance does not resolve on device", device=device_label, gi_id=gi_id
            ) from e
        except DriverError as e:
            raise DriverRejectedError(
                f"GPU instance lookup failed: {e}", device=device_label, gi_id=gi_id, driver_code=e.code
            ) from e

        try:
            ci = self._driver.get_sub_instance_by_id(gi, ci_id)
        except DriverNotFoundError as e:
            log.warning("compute_instance_not_found")
            raise InstanceNotFoundError(
                "Compute instance does not resolve in GPU instance",
                device=device_label,
                gi_id=gi_id,
                ci_id=ci_id,
            ) from e
        except DriverError as e:
            raise DriverRejectedError(
                f"Compute instance lookup failed: {e}",
                device=device_label,
                gi_id=gi_id,
                ci_id=ci_id,
                driver_code=e.code,
            ) from e

        try:
            self._driver.destroy_sub_instance(ci)
        except DriverError as e:
            log.error("compute_instance_destroy_failed", driver_code=e.code)
            raise DriverRejectedError(
                f"Compute instance destroy failed, GPU instance left intact: {e}",
                device=device_label,
                gi_id=gi_id,
                ci_id=ci_id,
                driver_code=e.code,
                state=SliceState.READY,
            ) from e
        log.info("compute_instance_destroyed")

        try:
            self._driver.destroy_instance(gi)
        except DriverError as e:
            log.error("gpu_instance_destroy_failed", driver_code=e.code)
            raise DriverRejectedError(
                f"GPU instance destroy failed after its compute instance was removed: {e}",
                device=device_label,
                gi_id=gi_id,
                ci_id=ci_id,
                driver_code=e.code,
                state=SliceState.CI_DESTROYED,
            ) from e
        log.info("gpu_instance_destroyed")

    def reclaim_slice(self, slice_: Slice) -> None:
        """Reclaim a slice returned by the allocator and walk its state to ABSENT.

        Raises:
            SliceStateError: If the slice is not READY.
        """
        if slice_.state != SliceState.READY:
            raise SliceStateError(f"Only READY slices can be reclaimed, got {slice_.state.value}")

        try:
            self.reclaim(slice_.device, slice_.gi_id, slice_.ci_id)
        except DriverRejectedError as e:
            if e.state == SliceState.CI_DESTROYED:
                slice_.mark_ci_destroyed()
            raise
        slice_.mark_ci_destroyed()
        slice_.mark_absent()
