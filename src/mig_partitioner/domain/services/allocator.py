"""Partition allocator.

Creates a slice (GPU instance + compute instance) at a requested placement.
Driver slice creation is not idempotent: issuing the same create twice
fails the second time with "insufficient resources" even though the
desired partition exists. The allocator therefore answers exhaustion with
a reconciliation scan and reuses a matching partition when one is live.

A GPU instance matches only when its placement equals the requested one
and its parent device identity equals the target device's identity.
Neither template id nor instance id alone is enough, since several
devices expose the same templates.
"""

from __future__ import annotations

from typing import Optional

import structlog

from mig_partitioner.domain.entities.profile import Profile
from mig_partitioner.domain.entities.slice import Slice, SliceState
from mig_partitioner.domain.errors import (
    DriverRejectedError,
    InvalidPlacementError,
    PartitionUnavailableError,
)
from mig_partitioner.domain.value_objects.identifiers import DeviceIdentity, GpuInstanceId
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.ports.outbound import (
    Created,
    DeviceCapabilityPort,
    DeviceHandle,
    DriverError,
    Exhausted,
    InstanceHandle,
    SubInstanceHandle,
)

logger = structlog.get_logger(__name__)

# Compute templates are resolved against engine slot 0 (single shared engine).
DEFAULT_ENGINE_SLOT = 0


class PartitionAllocator:
    """Allocates slices on a device, reconciling with existing partitions."""

    def __init__(self, driver: DeviceCapabilityPort, engine_slot: int = DEFAULT_ENGINE_SLOT) -> None:
        """Initialize the allocator.

        Args:
            driver: Device capability port.
            engine_slot: Engine placement used for compute template lookup.
        """
        self._driver = driver
        self._engine_slot = engine_slot

    def allocate(self, device: DeviceHandle, profile: Profile, placement: Placement) -> Slice:
        """Allocate a slice at a fixed placement.

        Args:
            device: Target device handle.
            profile: Profile to instantiate.
            placement: Requested slot span; its size must equal the profile's width.

        Returns:
            Slice in READY state.

        Raises:
            InvalidPlacementError: If the placement width does not fit the profile.
            PartitionUnavailableError: If resources are exhausted and nothing can be reused.
            DriverRejectedError: On any other driver failure.
        """
        if placement.size != profile.slot_width:
            raise InvalidPlacementError(
                f"Placement size {placement.size} does not match slot width {profile.slot_width}",
                profile=profile.name,
                placement=placement,
            )

        try:
            identity = self._driver.get_device_identity(device)
        except DriverError as e:
            raise DriverRejectedError(
                f"Could not read device identity: {e}",
                profile=profile.name,
                placement=placement,
                driver_code=e.code,
            ) from e

        log = logger.bind(device=identity, profile=profile.name, placement=str(placement))
        slice_ = Slice(device=identity, profile=profile, placement=placement)

        gi, gi_reused = self._create_or_recover_instance(device, identity, profile, placement, log)
        slice_.mark_gi_created(self._instance_id(gi, slice_), reused=gi_reused)
        log = log.bind(gi_id=slice_.gi_id)
        log.info("gpu_instance_resolved", reused=gi_reused)

        ci, ci_reused = self._create_or_recover_sub_instance(gi, slice_, log)
        try:
            ci_id = self._driver.get_sub_instance_id(ci)
        except DriverError as e:
            raise self._partial_failure(slice_, f"Could not read compute instance id: {e}", e.code) from e
        slice_.mark_ready(ci_id, reused=ci_reused)

        log.info("slice_ready", ci_id=ci_id, ci_reused=ci_reused)
        return slice_

    # -- GPU instance ---------------------------------------------------------

    def _create_or_recover_instance(
        self,
        device: DeviceHandle,
        identity: DeviceIdentity,
        profile: Profile,
        placement: Placement,
        log: structlog.BoundLogger,
    ) -> tuple[InstanceHandle, bool]:
        result = self._driver.create_instance(device, profile.instance_template_id, placement)

        if isinstance(result, Created):
            return result.handle, False

        if isinstance(result, Exhausted):
            log.info("gpu_instance_exhausted_reconciling")
            existing = self._find_matching_instance(device, identity, profile, placement)
            if existing is None:
                log.warning("partition_unavailable")
                raise PartitionUnavailableError(
                    "Resources exhausted and no existing GPU instance matches the placement",
                    device=identity,
                    profile=profile.name,
                    placement=placement,
                )
            return existing, True

        log.error("gpu_instance_rejected", driver_code=result.code, reason=result.message)
        raise DriverRejectedError(
            f"GPU instance creation rejected: {result.message}",
            device=identity,
            profile=profile.name,
            placement=placement,
            driver_code=result.code,
        )

    def _find_matching_instance(
        self,
        device: DeviceHandle,
        identity: DeviceIdentity,
        profile: Profile,
        placement: Placement,
    ) -> Optional[InstanceHandle]:
        """Scan live instances of the profile's template for an exact match.

        Any driver failure during the scan aborts the call.
        """
        try:
            candidates = self._driver.list_instances(device, profile.instance_template_id)
            for candidate in candidates:
                if self._driver.get_instance_placement(candidate) != placement:
                    continue
                if self._driver.get_instance_parent_identity(candidate) != identity:
                    continue
                return candidate
        except DriverError as e:
            raise DriverRejectedError(
                f"Reconciliation scan failed: {e}",
                device=identity,
                profile=profile.name,
                placement=placement,
                driver_code=e.code,
            ) from e
        return None

    def _instance_id(self, gi: InstanceHandle, slice_: Slice) -> GpuInstanceId:
        try:
            return self._driver.get_instance_id(gi)
        except DriverError as e:
            raise DriverRejectedError(
                f"Could not read GPU instance id: {e}",
                device=slice_.device,
                profile=slice_.profile.name,
                placement=slice_.placement,
                driver_code=e.code,
            ) from e

    # -- Compute instance -----------------------------------------------------

    def _create_or_recover_sub_instance(
        self, gi: InstanceHandle, slice_: Slice, log: structlog.BoundLogger
    ) -> tuple[SubInstanceHandle, bool]:
        sub_template_id = slice_.profile.sub_instance_template_id
        try:
            info = self._driver.get_sub_instance_template_info(gi, sub_template_id, self._engine_slot)
        except DriverError as e:
            log.error("compute_template_lookup_failed", driver_code=e.code)
            raise self._partial_failure(slice_, f"Compute template lookup failed: {e}", e.code) from e

        result = self._driver.create_sub_instance(gi, info)

        if isinstance(result, Created):
            return result.handle, False

        if isinstance(result, Exhausted):
            log.info("compute_instance_exhausted_reconciling")
            try:
                existing = list(self._driver.list_sub_instances(gi, sub_template_id, self._engine_slot))
            except DriverError as e:
                raise self._partial_failure(slice_, f"Compute instance scan failed: {e}", e.code) from e
            if not existing:
                log.warning("compute_instance_unavailable")
                raise PartitionUnavailableError(
                    "Compute resources exhausted and no existing compute instance found",
                    device=slice_.device,
                    profile=slice_.profile.name,
                    placement=slice_.placement,
                    gi_id=slice_.gi_id,
                    state=SliceState.GI_CREATED,
                )
            return existing[0], True

        log.error("compute_instance_rejected", driver_code=result.code, reason=result.message)
        raise self._partial_failure(
            slice_, f"Compute instance creation rejected: {result.message}", result.code
        )

    @staticmethod
    def _partial_failure(slice_: Slice, message: str, code: Optional[int]) -> DriverRejectedError:
        """Build an error for a slice whose GI exists but whose CI does not."""
        return DriverRejectedError(
            message,
            device=slice_.device,
            profile=slice_.profile.name,
            placement=slice_.placement,
            gi_id=slice_.gi_id,
            driver_code=code,
            state=slice_.state,
        )
