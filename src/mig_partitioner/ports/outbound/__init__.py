"""Outbound ports - Driver interfaces for the partition manager.

Outbound ports define the device capability surface the lifecycle manager
depends on: handle lookup, instance creation/destruction, enumeration and
placement queries. Implementations wrap NVML or simulate it in memory.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Protocol, Sequence, Union

from mig_partitioner.domain.value_objects.identifiers import (
    ComputeInstanceId,
    DeviceIdentity,
    DeviceRef,
    GpuInstanceId,
)
from mig_partitioner.domain.value_objects.placement import Placement


# =============================================================================
# Handles
# =============================================================================

# Opaque driver references. Only the adapter that produced a handle may
# interpret it; the domain passes them back unchanged.
DeviceHandle = Any
InstanceHandle = Any
SubInstanceHandle = Any
TemplateInfo = Any


# =============================================================================
# Driver status and errors
# =============================================================================


class DriverStatus(IntEnum):
    """Driver return codes (numeric values follow NVML)."""
    SUCCESS = 0
    UNINITIALIZED = 1
    INVALID_ARGUMENT = 2
    NOT_SUPPORTED = 3
    NO_PERMISSION = 4
    NOT_FOUND = 6
    IN_USE = 19
    INSUFFICIENT_RESOURCES = 23
    UNKNOWN = 999


class DriverError(Exception):
    """Raised when a driver call fails.

    Attributes:
        code: Underlying driver return code.
    """

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(message or f"driver error {code}")
        self.code = code


class DriverNotFoundError(DriverError):
    """Raised when a device, GI or CI lookup does not resolve."""

    def __init__(self, message: str = "") -> None:
        super().__init__(DriverStatus.NOT_FOUND, message)


# =============================================================================
# Creation results
# =============================================================================


@dataclass(frozen=True)
class Created:
    """Creation succeeded."""
    handle: Any


@dataclass(frozen=True)
class Exhausted:
    """The template's resource pool on the device is fully subscribed."""
    message: str = ""


@dataclass(frozen=True)
class Rejected:
    """Creation failed for any other reason."""
    code: int
    message: str = ""


CreateResult = Union[Created, Exhausted, Rejected]


# =============================================================================
# Usage snapshots
# =============================================================================


@dataclass(frozen=True)
class MigDeviceUsage:
    """Memory and activity of one partition (a GI/CI pair) as the driver sees it.

    Attributes:
        gi_id: GPU instance backing the partition.
        ci_id: Compute instance backing the partition.
        memory_mb: Total framebuffer memory in MiB, None if the driver did not report it.
        in_use: True when compute or graphics processes are running on it.
    """
    gi_id: int
    ci_id: int
    memory_mb: Optional[int] = None
    in_use: bool = False


@dataclass(frozen=True)
class DriverVersions:
    """Versions of the kernel driver and the management library."""
    driver: Optional[str] = None
    library: Optional[str] = None


# =============================================================================
# Device Capability Port
# =============================================================================


class DeviceCapabilityPort(Protocol):
    """Protocol for the accelerator driver's partitioning surface.

    Lookups raise DriverNotFoundError when an id does not resolve. Creation
    calls never raise for driver failures; they return a CreateResult so the
    caller can tell exhaustion apart from rejection. Every other failure is
    a DriverError.

    Thread Safety:
        Calls are blocking and may take non-trivial time. The device's
        partition table is shared state; callers that need exactly-once
        creation must serialize per (device, placement) themselves.
    """

    # -- Devices --------------------------------------------------------------

    @abstractmethod
    def device_count(self) -> int:
        """Return the number of devices visible to the driver."""
        ...

    @abstractmethod
    def get_device_handle(self, ref: DeviceRef) -> DeviceHandle:
        """Look up a device by index or UUID.

        Args:
            ref: Device index or UUID string.

        Returns:
            Device handle.

        Raises:
            DriverNotFoundError: If no device matches.
        """
        ...

    @abstractmethod
    def get_device_identity(self, device: DeviceHandle) -> DeviceIdentity:
        """Return the device's identity, comparable for equality."""
        ...

    @abstractmethod
    def get_device_name(self, device: DeviceHandle) -> str:
        """Return the device's marketing name."""
        ...

    @abstractmethod
    def is_mig_enabled(self, device: DeviceHandle) -> bool:
        """Check whether partitioning mode is currently enabled."""
        ...

    @abstractmethod
    def get_possible_placements(self, device: DeviceHandle, template_id: int) -> Sequence[Placement]:
        """Return every placement the template could occupy on an empty device."""
        ...

    # -- GPU instances --------------------------------------------------------

    @abstractmethod
    def create_instance(self, device: DeviceHandle, template_id: int, placement: Placement) -> CreateResult:
        """Create a GPU instance at a fixed placement.

        Args:
            device: Parent device.
            template_id: GPU instance template id.
            placement: Requested slot span.

        Returns:
            Created with the instance handle, Exhausted, or Rejected.
        """
        ...

    @abstractmethod
    def list_instances(self, device: DeviceHandle, template_id: int) -> Sequence[InstanceHandle]:
        """List live GPU instances created from a template.

        Raises:
            DriverError: If enumeration fails.
        """
        ...

    @abstractmethod
    def get_instance_by_id(self, device: DeviceHandle, gi_id: int) -> InstanceHandle:
        """Look up a GPU instance by id.

        Raises:
            DriverNotFoundError: If the id does not resolve on this device.
        """
        ...

    @abstractmethod
    def get_instance_id(self, gi: InstanceHandle) -> GpuInstanceId:
        """Return the instance's id within its device."""
        ...

    @abstractmethod
    def get_instance_placement(self, gi: InstanceHandle) -> Placement:
        """Return the slot span occupied by the instance."""
        ...

    @abstractmethod
    def get_instance_parent_identity(self, gi: InstanceHandle) -> DeviceIdentity:
        """Return the identity of the device owning the instance."""
        ...

    @abstractmethod
    def destroy_instance(self, gi: InstanceHandle) -> None:
        """Destroy a GPU instance. All its compute instances must be gone.

        Raises:
            DriverError: If destruction fails.
        """
        ...

    # -- Compute instances ----------------------------------------------------

    @abstractmethod
    def get_sub_instance_template_info(
        self, gi: InstanceHandle, sub_template_id: int, engine_slot: int
    ) -> TemplateInfo:
        """Fetch compute template info scoped to a GPU instance.

        Raises:
            DriverError: If the template is unknown or unsupported.
        """
        ...

    @abstractmethod
    def create_sub_instance(self, gi: InstanceHandle, info: TemplateInfo) -> CreateResult:
        """Create a compute instance inside a GPU instance."""
        ...

    @abstractmethod
    def list_sub_instances(
        self, gi: InstanceHandle, sub_template_id: int, engine_slot: int
    ) -> Sequence[SubInstanceHandle]:
        """List live compute instances of a template inside a GPU instance.

        The template is resolved against the same engine slot that
        get_sub_instance_template_info uses.

        Raises:
            DriverError: If enumeration fails.
        """
        ...

    @abstractmethod
    def get_sub_instance_by_id(self, gi: InstanceHandle, ci_id: int) -> SubInstanceHandle:
        """Look up a compute instance by id.

        Raises:
            DriverNotFoundError: If the id does not resolve under this GI.
        """
        ...

    @abstractmethod
    def get_sub_instance_id(self, ci: SubInstanceHandle) -> ComputeInstanceId:
        """Return the compute instance's id within its GPU instance."""
        ...

    @abstractmethod
    def destroy_sub_instance(self, ci: SubInstanceHandle) -> None:
        """Destroy a compute instance.

        Raises:
            DriverError: If destruction fails.
        """
        ...

    # -- Usage ----------------------------------------------------------------

    @abstractmethod
    def list_mig_devices(self, device: DeviceHandle) -> Sequence[MigDeviceUsage]:
        """Report memory and activity of every partition on a device.

        Failing per-partition queries leave the field unset rather than
        failing the call.

        Raises:
            DriverError: If the partitions cannot be enumerated.
        """
        ...

    @abstractmethod
    def get_driver_versions(self) -> DriverVersions:
        """Return driver and library versions; unknown fields stay None."""
        ...

    # -- Lifecycle ------------------------------------------------------------

    @abstractmethod
    def shutdown(self) -> None:
        """Release driver resources."""
        ...


__all__ = [
    "DeviceHandle",
    "InstanceHandle",
    "SubInstanceHandle",
    "TemplateInfo",
    "DriverStatus",
    "DriverError",
    "DriverNotFoundError",
    "Created",
    "Exhausted",
    "Rejected",
    "CreateResult",
    "MigDeviceUsage",
    "DriverVersions",
    "DeviceCapabilityPort",
]
