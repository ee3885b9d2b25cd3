"""Mock device driver for testing and development.

This adapter provides an in-memory implementation of the
DeviceCapabilityPort protocol for use in tests and on hosts without
partitionable GPUs. It keeps a slot table per device and reproduces the
driver behaviors the lifecycle manager depends on:

- creating a GPU instance over occupied slots reports exhaustion,
- a GPU instance holds at most one compute instance,
- a GPU instance with a live compute instance cannot be destroyed,
- each compute instance is one MIG device sized by its GPU instance slots.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from mig_partitioner.domain.services.profile_catalog import ProfileCatalog
from mig_partitioner.domain.value_objects.identifiers import (
    ComputeInstanceId,
    DeviceIdentity,
    DeviceRef,
    GpuInstanceId,
)
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.infrastructure.logging import get_logger
from mig_partitioner.ports.outbound import (
    Created,
    CreateResult,
    DriverError,
    DriverNotFoundError,
    DriverStatus,
    DriverVersions,
    Exhausted,
    MigDeviceUsage,
    Rejected,
)

logger = get_logger(__name__)


@dataclass(eq=False)
class MockComputeInstance:
    """State for a mock compute instance."""

    ci_id: int
    template_id: int
    gi: MockGpuInstance = field(repr=False)
    in_use: bool = False


@dataclass(eq=False)
class MockGpuInstance:
    """State for a mock GPU instance."""

    gi_id: int
    parent: str  # Parent device UUID
    template_id: int
    placement: Placement
    sub_instances: dict[int, MockComputeInstance] = field(default_factory=dict)
    next_ci_id: int = 0
    destroyed: bool = False


@dataclass(eq=False)
class MockDevice:
    """State for a mock physical device."""

    index: int
    uuid: str
    name: str = "NVIDIA A100-SXM4-40GB"
    slot_count: int = 8
    mig_enabled: bool = True
    memory_mb_per_slot: int = 4864
    instances: dict[int, MockGpuInstance] = field(default_factory=dict)
    next_gi_id: int = 1


@dataclass(frozen=True)
class MockComputeTemplateInfo:
    """Compute template info handed back by the mock driver."""

    template_id: int
    engine_slot: int


# Slot widths of the A100 GPU instance templates
DEFAULT_TEMPLATE_WIDTHS: Mapping[int, int] = {0: 1, 1: 2, 2: 4, 3: 4, 4: 8, 9: 2}


class MockDeviceDriver:
    """Mock implementation of DeviceCapabilityPort for testing.

    Example:
        driver = MockDeviceDriver.from_catalog(catalog, device_count=2)
        device = driver.get_device_handle(0)
        result = driver.create_instance(device, 0, Placement(0, 1))
        driver.inject_failure("destroy_sub_instance", DriverStatus.IN_USE)
    """

    def __init__(
        self,
        devices: Optional[Iterable[MockDevice]] = None,
        template_widths: Optional[Mapping[int, int]] = None,
        versions: DriverVersions = DriverVersions(driver="mock", library="mock"),
    ) -> None:
        """Initialize mock driver.

        Args:
            devices: Simulated devices. Defaults to a single A100.
            template_widths: GPU instance template id -> slot width.
            versions: Versions reported by get_driver_versions.
        """
        self._versions = versions
        self._devices = list(devices) if devices is not None else [MockDevice(0, "GPU-mock-0000")]
        self._widths = dict(template_widths or DEFAULT_TEMPLATE_WIDTHS)
        self._faults: dict[str, deque[int]] = defaultdict(deque)
        self._lock = threading.RLock()
        self.calls: list[str] = []

    @classmethod
    def from_catalog(
        cls,
        catalog: ProfileCatalog,
        device_count: int = 1,
        slot_count: int = 8,
        device_name: str = "NVIDIA A100-SXM4-40GB",
    ) -> MockDeviceDriver:
        """Build a driver whose templates match a profile catalog."""
        devices = [
            MockDevice(index=i, uuid=f"GPU-mock-{i:04d}", name=device_name, slot_count=slot_count)
            for i in range(device_count)
        ]
        widths = {p.instance_template_id: p.slot_width for p in catalog.profiles()}
        return cls(devices, widths)

    # -- Devices --------------------------------------------------------------

    def device_count(self) -> int:
        self._raise_fault(self._record("device_count"))
        return len(self._devices)

    def get_device_handle(self, ref: DeviceRef) -> MockDevice:
        """Look up a device by index or UUID.

        Raises:
            DriverNotFoundError: If no device matches.
        """
        self._raise_fault(self._record("get_device_handle"))
        if isinstance(ref, int):
            if 0 <= ref < len(self._devices):
                return self._devices[ref]
        else:
            for device in self._devices:
                if device.uuid == ref:
                    return device
        raise DriverNotFoundError(f"No mock device {ref!r}")

    def get_device_identity(self, device: MockDevice) -> DeviceIdentity:
        self._raise_fault(self._record("get_device_identity"))
        return DeviceIdentity(device.uuid)

    def get_device_name(self, device: MockDevice) -> str:
        self._raise_fault(self._record("get_device_name"))
        return device.name

    def is_mig_enabled(self, device: MockDevice) -> bool:
        self._raise_fault(self._record("is_mig_enabled"))
        return device.mig_enabled

    def get_possible_placements(self, device: MockDevice, template_id: int) -> list[Placement]:
        self._raise_fault(self._record("get_possible_placements"))
        width = self._width(template_id)
        return [Placement(start, width) for start in range(0, device.slot_count - width + 1, width)]

    # -- GPU instances --------------------------------------------------------

    def create_instance(self, device: MockDevice, template_id: int, placement: Placement) -> CreateResult:
        """Create a mock GPU instance.

        Returns:
            Exhausted if any slot in the placement is taken, Rejected if the
            placement does not fit the template or device.
        """
        fault = self._record("create_instance")
        if fault is not None:
            return self._fault_result(fault)

        with self._lock:
            if template_id not in self._widths:
                return Rejected(DriverStatus.NOT_SUPPORTED, f"Unknown template {template_id}")
            width = self._widths[template_id]
            if placement.size != width or placement.start % width or placement.end > device.slot_count:
                return Rejected(DriverStatus.INVALID_ARGUMENT, f"Invalid placement {placement}")
            if not device.mig_enabled:
                return Rejected(DriverStatus.NOT_SUPPORTED, "MIG mode disabled")
            for gi in device.instances.values():
                if gi.placement.overlaps(placement):
                    return Exhausted(f"Slots {placement} occupied by GI {gi.gi_id}")

            gi = self._add_instance(device, template_id, placement, device.uuid)
            logger.debug("mock_gpu_instance_created", device=device.uuid, gi_id=gi.gi_id)
            return Created(gi)

    def list_instances(self, device: MockDevice, template_id: int) -> list[MockGpuInstance]:
        self._raise_fault(self._record("list_instances"))
        with self._lock:
            return [gi for gi in device.instances.values() if gi.template_id == template_id]

    def get_instance_by_id(self, device: MockDevice, gi_id: int) -> MockGpuInstance:
        self._raise_fault(self._record("get_instance_by_id"))
        with self._lock:
            gi = device.instances.get(gi_id)
        if gi is None:
            raise DriverNotFoundError(f"No GPU instance {gi_id} on {device.uuid}")
        return gi

    def get_instance_id(self, gi: MockGpuInstance) -> GpuInstanceId:
        self._raise_fault(self._record("get_instance_id"))
        return GpuInstanceId(gi.gi_id)

    def get_instance_placement(self, gi: MockGpuInstance) -> Placement:
        self._raise_fault(self._record("get_instance_placement"))
        return gi.placement

    def get_instance_parent_identity(self, gi: MockGpuInstance) -> DeviceIdentity:
        self._raise_fault(self._record("get_instance_parent_identity"))
        return DeviceIdentity(gi.parent)

    def destroy_instance(self, gi: MockGpuInstance) -> None:
        """Destroy a mock GPU instance.

        Raises:
            DriverError: IN_USE if compute instances are still alive.
        """
        self._raise_fault(self._record("destroy_instance"))
        with self._lock:
            if gi.sub_instances:
                raise DriverError(DriverStatus.IN_USE, f"GPU instance {gi.gi_id} has live compute instances")
            device = self._owner(gi)
            device.instances.pop(gi.gi_id, None)
            gi.destroyed = True
        logger.debug("mock_gpu_instance_destroyed", gi_id=gi.gi_id)

    # -- Compute instances ----------------------------------------------------

    def get_sub_instance_template_info(
        self, gi: MockGpuInstance, sub_template_id: int, engine_slot: int
    ) -> MockComputeTemplateInfo:
        self._raise_fault(self._record("get_sub_instance_template_info"))
        self._check_engine_slot(engine_slot)
        return MockComputeTemplateInfo(sub_template_id, engine_slot)

    def create_sub_instance(self, gi: MockGpuInstance, info: MockComputeTemplateInfo) -> CreateResult:
        fault = self._record("create_sub_instance")
        if fault is not None:
            return self._fault_result(fault)

        with self._lock:
            if gi.destroyed:
                return Rejected(DriverStatus.NOT_FOUND, f"GPU instance {gi.gi_id} destroyed")
            if gi.sub_instances:
                return Exhausted(f"GPU instance {gi.gi_id} already holds a compute instance")
            ci = self._add_sub_instance(gi, info.template_id)
        logger.debug("mock_compute_instance_created", gi_id=gi.gi_id, ci_id=ci.ci_id)
        return Created(ci)

    def list_sub_instances(
        self, gi: MockGpuInstance, sub_template_id: int, engine_slot: int
    ) -> list[MockComputeInstance]:
        self._raise_fault(self._record("list_sub_instances"))
        self._check_engine_slot(engine_slot)
        with self._lock:
            return [ci for ci in gi.sub_instances.values() if ci.template_id == sub_template_id]

    def get_sub_instance_by_id(self, gi: MockGpuInstance, ci_id: int) -> MockComputeInstance:
        self._raise_fault(self._record("get_sub_instance_by_id"))
        with self._lock:
            ci = gi.sub_instances.get(ci_id)
        if ci is None:
            raise DriverNotFoundError(f"No compute instance {ci_id} in GPU instance {gi.gi_id}")
        return ci

    def get_sub_instance_id(self, ci: MockComputeInstance) -> ComputeInstanceId:
        self._raise_fault(self._record("get_sub_instance_id"))
        return ComputeInstanceId(ci.ci_id)

    def destroy_sub_instance(self, ci: MockComputeInstance) -> None:
        self._raise_fault(self._record("destroy_sub_instance"))
        with self._lock:
            ci.gi.sub_instances.pop(ci.ci_id, None)
        logger.debug("mock_compute_instance_destroyed", gi_id=ci.gi.gi_id, ci_id=ci.ci_id)

    # -- Usage ----------------------------------------------------------------

    def list_mig_devices(self, device: MockDevice) -> list[MigDeviceUsage]:
        self._raise_fault(self._record("list_mig_devices"))
        with self._lock:
            return [
                MigDeviceUsage(
                    gi_id=gi.gi_id,
                    ci_id=ci.ci_id,
                    memory_mb=gi.placement.size * device.memory_mb_per_slot,
                    in_use=ci.in_use,
                )
                for gi in device.instances.values()
                for ci in gi.sub_instances.values()
            ]

    def get_driver_versions(self) -> DriverVersions:
        self._raise_fault(self._record("get_driver_versions"))
        return self._versions

    def shutdown(self) -> None:
        self._raise_fault(self._record("shutdown"))

    # Test helpers
    def inject_failure(self, operation: str, code: int = DriverStatus.UNKNOWN, times: int = 1) -> None:
        """Make the next ``times`` calls of an operation fail with ``code``.

        For create_instance/create_sub_instance, INSUFFICIENT_RESOURCES yields
        Exhausted and any other code yields Rejected.
        """
        self._faults[operation].extend([int(code)] * times)

    def seed_instance(
        self,
        device_index: int,
        template_id: int,
        placement: Placement,
        parent: Optional[str] = None,
        with_sub_instance: bool = False,
    ) -> MockGpuInstance:
        """Place a GPU instance directly, bypassing validation.

        Args:
            device_index: Device to attach the instance to.
            template_id: Template the instance claims to come from.
            placement: Slot span.
            parent: Parent identity to report, defaults to the device's UUID.
            with_sub_instance: Also create a compute instance of the same template.
        """
        with self._lock:
            device = self._devices[device_index]
            gi = self._add_instance(device, template_id, placement, parent or device.uuid)
            if with_sub_instance:
                self._add_sub_instance(gi, template_id)
        return gi

    def mark_in_use(self, device_index: int, gi_id: int, ci_id: int, in_use: bool = True) -> None:
        """Pretend processes are (or are no longer) running on a compute instance."""
        with self._lock:
            self._devices[device_index].instances[gi_id].sub_instances[ci_id].in_use = in_use

    def get_device(self, index: int) -> MockDevice:
        return self._devices[index]

    def call_count(self, operation: str) -> int:
        return self.calls.count(operation)

    def clear(self) -> None:
        """Remove every instance and pending fault (for testing)."""
        with self._lock:
            for device in self._devices:
                device.instances.clear()
                device.next_gi_id = 1
            self._faults.clear()
            self.calls.clear()

    # -- Internals ------------------------------------------------------------

    def _record(self, operation: str) -> Optional[int]:
        """Log a call and pop its pending fault, if any."""
        with self._lock:
            self.calls.append(operation)
            pending = self._faults.get(operation)
            if pending:
                return pending.popleft()
        return None

    @staticmethod
    def _raise_fault(code: Optional[int]) -> None:
        if code is None:
            return
        if code == DriverStatus.NOT_FOUND:
            raise DriverNotFoundError("Injected not-found")
        raise DriverError(code, f"Injected failure {code}")

    @staticmethod
    def _fault_result(code: int) -> CreateResult:
        if code == DriverStatus.INSUFFICIENT_RESOURCES:
            return Exhausted("Injected exhaustion")
        return Rejected(code, f"Injected failure {code}")

    @staticmethod
    def _check_engine_slot(engine_slot: int) -> None:
        if engine_slot != 0:
            raise DriverError(DriverStatus.NOT_SUPPORTED, f"Engine slot {engine_slot} not supported")

    def _width(self, template_id: int) -> int:
        try:
            return self._widths[template_id]
        except KeyError:
            raise DriverError(DriverStatus.NOT_SUPPORTED, f"Unknown template {template_id}") from None

    def _owner(self, gi: MockGpuInstance) -> MockDevice:
        for device in self._devices:
            if device.instances.get(gi.gi_id) is gi:
                return device
        raise DriverNotFoundError(f"GPU instance {gi.gi_id} is not attached to any device")

    @staticmethod
    def _add_instance(device: MockDevice, template_id: int, placement: Placement, parent: str) -> MockGpuInstance:
        gi = MockGpuInstance(
            gi_id=device.next_gi_id,
            parent=parent,
            template_id=template_id,
            placement=placement,
        )
        device.instances[gi.gi_id] = gi
        device.next_gi_id += 1
        return gi

    @staticmethod
    def _add_sub_instance(gi: MockGpuInstance, template_id: int) -> MockComputeInstance:
        ci = MockComputeInstance(ci_id=gi.next_ci_id, template_id=template_id, gi=gi)
        gi.sub_instances[ci.ci_id] = ci
        gi.next_ci_id += 1
        return ci
