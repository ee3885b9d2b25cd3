"""NVML device driver adapter.

Implements DeviceCapabilityPort on top of the NVIDIA Management Library
through ``pynvml`` (distributed as nvidia-ml-py). Template ids handled by
the domain are NVML *profile* enums (NVML_GPU_INSTANCE_PROFILE_*,
NVML_COMPUTE_INSTANCE_PROFILE_*); each call first resolves the enum to
the device-specific profile info whose ``id`` the create/list calls take.

References:
    - NVML API reference, "Multi Instance GPU Management"
"""

from __future__ import annotations

import ctypes
from typing import Any, Optional

import pynvml

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
    DriverVersions,
    Exhausted,
    MigDeviceUsage,
    Rejected,
)

logger = get_logger(__name__)

_MIB = 1024 * 1024


def _describe(error: pynvml.NVMLError) -> str:
    """Name an NVML error without calling back into the library."""
    return f"{type(error).__name__} ({error.value})"


def _text(value: Any) -> str:
    """Older pynvml releases return bytes for strings."""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _translate(error: pynvml.NVMLError, what: str) -> DriverError:
    if error.value == pynvml.NVML_ERROR_NOT_FOUND:
        return DriverNotFoundError(f"{what}: {_describe(error)}")
    return DriverError(error.value, f"{what}: {_describe(error)}")


def _create_result(error: pynvml.NVMLError) -> CreateResult:
    if error.value == pynvml.NVML_ERROR_INSUFFICIENT_RESOURCES:
        return Exhausted(_describe(error))
    return Rejected(error.value, _describe(error))


class NvmlDeviceDriver:
    """DeviceCapabilityPort backed by NVML.

    NVML is initialized on construction and released by ``shutdown()``.
    """

    def __init__(self) -> None:
        """Initialize NVML.

        Raises:
            DriverError: If the library cannot be loaded or initialized.
        """
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise _translate(e, "NVML initialization failed") from e
        logger.info("nvml_initialized")

    # -- Devices --------------------------------------------------------------

    def device_count(self) -> int:
        try:
            return pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            raise _translate(e, "device count") from e

    def get_device_handle(self, ref: DeviceRef) -> Any:
        try:
            if isinstance(ref, int):
                return pynvml.nvmlDeviceGetHandleByIndex(ref)
            return pynvml.nvmlDeviceGetHandleByUUID(ref)
        except pynvml.NVMLError as e:
            if e.value == pynvml.NVML_ERROR_INVALID_ARGUMENT:
                # Out-of-range indices are reported as invalid arguments
                raise DriverNotFoundError(f"device {ref}: {_describe(e)}") from e
            raise _translate(e, f"device {ref}") from e

    def get_device_identity(self, device: Any) -> DeviceIdentity:
        try:
            return DeviceIdentity(_text(pynvml.nvmlDeviceGetUUID(device)))
        except pynvml.NVMLError as e:
            raise _translate(e, "device UUID") from e

    def get_device_name(self, device: Any) -> str:
        try:
            return _text(pynvml.nvmlDeviceGetName(device))
        except pynvml.NVMLError as e:
            raise _translate(e, "device name") from e

    def is_mig_enabled(self, device: Any) -> bool:
        try:
            current, _pending = pynvml.nvmlDeviceGetMigMode(device)
        except pynvml.NVMLError as e:
            if e.value == pynvml.NVML_ERROR_NOT_SUPPORTED:
                return False
            raise _translate(e, "MIG mode") from e
        return current == pynvml.NVML_DEVICE_MIG_ENABLE

    def get_possible_placements(self, device: Any, template_id: int) -> list[Placement]:
        try:
            info = pynvml.nvmlDeviceGetGpuInstanceProfileInfo(device, template_id)
            placements = (pynvml.c_nvmlGpuInstancePlacement_t * info.instanceCount)()
            count = ctypes.c_uint(info.instanceCount)
            pynvml.nvmlDeviceGetGpuInstancePossiblePlacements(device, info.id, placements, ctypes.byref(count))
        except pynvml.NVMLError as e:
            raise _translate(e, f"possible placements of template {template_id}") from e
        return [Placement(placements[i].start, placements[i].size) for i in range(count.value)]

    # -- GPU instances --------------------------------------------------------

    def create_instance(self, device: Any, template_id: int, placement: Placement) -> CreateResult:
        try:
            info = pynvml.nvmlDeviceGetGpuInstanceProfileInfo(device, template_id)
            requested = pynvml.c_nvmlGpuInstancePlacement_t()
            requested.start = placement.start
            requested.size = placement.size
            gi = pynvml.nvmlDeviceCreateGpuInstanceWithPlacement(device, info.id, ctypes.byref(requested))
        except pynvml.NVMLError as e:
            return _create_result(e)
        return Created(gi)

    def list_instances(self, device: Any, template_id: int) -> list[Any]:
        try:
            info = pynvml.nvmlDeviceGetGpuInstanceProfileInfo(device, template_id)
            instances = (pynvml.c_nvmlGpuInstance_t * info.instanceCount)()
            count = ctypes.c_uint()
            pynvml.nvmlDeviceGetGpuInstances(device, info.id, instances, ctypes.byref(count))
        except pynvml.NVMLError as e:
            raise _translate(e, f"GPU instances of template {template_id}") from e
        return [instances[i] for i in range(count.value)]

    def get_instance_by_id(self, device: Any, gi_id: int) -> Any:
        try:
            return pynvml.nvmlDeviceGetGpuInstanceById(device, gi_id)
        except pynvml.NVMLError as e:
            if e.value == pynvml.NVML_ERROR_INVALID_ARGUMENT:
                raise DriverNotFoundError(f"GPU instance {gi_id}: {_describe(e)}") from e
            raise _translate(e, f"GPU instance {gi_id}") from e

    def _instance_info(self, gi: Any) -> Any:
        try:
            return pynvml.nvmlGpuInstanceGetInfo(gi)
        except pynvml.NVMLError as e:
            raise _translate(e, "GPU instance info") from e

    def get_instance_id(self, gi: Any) -> GpuInstanceId:
        return GpuInstanceId(self._instance_info(gi).id)

    def get_instance_placement(self, gi: Any) -> Placement:
        info = self._instance_info(gi)
        return Placement(info.placement.start, info.placement.size)

    def get_instance_parent_identity(self, gi: Any) -> DeviceIdentity:
        return self.get_device_identity(self._instance_info(gi).device)

    def destroy_instance(self, gi: Any) -> None:
        try:
            pynvml.nvmlGpuInstanceDestroy(gi)
        except pynvml.NVMLError as e:
            raise _translate(e, "destroy GPU instance") from e

    # -- Compute instances ----------------------------------------------------

    def get_sub_instance_template_info(self, gi: Any, sub_template_id: int, engine_slot: int) -> Any:
        try:
            return pynvml.nvmlGpuInstanceGetComputeInstanceProfileInfo(gi, sub_template_id, engine_slot)
        except pynvml.NVMLError as e:
            raise _translate(e, f"compute template {sub_template_id}") from e

    def create_sub_instance(self, gi: Any, info: Any) -> CreateResult:
        try:
            ci = pynvml.nvmlGpuInstanceCreateComputeInstance(gi, info.id)
        except pynvml.NVMLError as e:
            return _create_result(e)
        return Created(ci)

    def list_sub_instances(self, gi: Any, sub_template_id: int, engine_slot: int) -> list[Any]:
        info = self.get_sub_instance_template_info(gi, sub_template_id, engine_slot)
        try:
            instances = (pynvml.c_nvmlComputeInstance_t * info.instanceCount)()
            count = ctypes.c_uint()
            pynvml.nvmlGpuInstanceGetComputeInstances(gi, info.id, instances, ctypes.byref(count))
        except pynvml.NVMLError as e:
            raise _translate(e, f"compute instances of template {sub_template_id}") from e
        return [instances[i] for i in range(count.value)]

    def get_sub_instance_by_id(self, gi: Any, ci_id: int) -> Any:
        try:
            return pynvml.nvmlGpuInstanceGetComputeInstanceById(gi, ci_id)
        except pynvml.NVMLError as e:
            if e.value == pynvml.NVML_ERROR_INVALID_ARGUMENT:
                raise DriverNotFoundError(f"compute instance {ci_id}: {_describe(e)}") from e
            raise _translate(e, f"compute instance {ci_id}") from e

    def get_sub_instance_id(self, ci: Any) -> ComputeInstanceId:
        try:
            return ComputeInstanceId(pynvml.nvmlComputeInstanceGetInfo(ci).id)
        except pynvml.NVMLError as e:
            raise _translate(e, "compute instance info") from e

    def destroy_sub_instance(self, ci: Any) -> None:
        try:
            pynvml.nvmlComputeInstanceDestroy(ci)
        except pynvml.NVMLError as e:
            raise _translate(e, "destroy compute instance") from e

    # -- Usage ----------------------------------------------------------------

    def list_mig_devices(self, device: Any) -> list[MigDeviceUsage]:
        """Walk the device's MIG device slots.

        Empty slots report NOT_FOUND and are skipped. A slot whose ids
        cannot be read is skipped with a warning.
        """
        try:
            slots = pynvml.nvmlDeviceGetMaxMigDeviceCount(device)
        except pynvml.NVMLError as e:
            raise _translate(e, "MIG device count") from e

        usages = []
        for index in range(slots):
            try:
                mig = pynvml.nvmlDeviceGetMigDeviceHandleByIndex(device, index)
                gi_id = pynvml.nvmlDeviceGetGpuInstanceId(mig)
                ci_id = pynvml.nvmlDeviceGetComputeInstanceId(mig)
            except pynvml.NVMLError as e:
                if e.value != pynvml.NVML_ERROR_NOT_FOUND:
                    logger.warning("mig_device_unreadable", slot=index, error=_describe(e))
                continue
            usages.append(
                MigDeviceUsage(
                    gi_id=gi_id,
                    ci_id=ci_id,
                    memory_mb=self._memory_mb(mig),
                    in_use=self._in_use(mig),
                )
            )
        return usages

    @staticmethod
    def _memory_mb(mig: Any) -> Optional[int]:
        try:
            return pynvml.nvmlDeviceGetMemoryInfo(mig).total // _MIB
        except pynvml.NVMLError as e:
            logger.debug("mig_memory_unavailable", error=_describe(e))
            return None

    @staticmethod
    def _in_use(mig: Any) -> bool:
        """Busy when any compute or graphics process runs on the MIG device."""
        queries = (
            ("compute", pynvml.nvmlDeviceGetComputeRunningProcesses),
            ("graphics", pynvml.nvmlDeviceGetGraphicsRunningProcesses),
        )
        for kind, query in queries:
            try:
                if query(mig):
                    return True
            except pynvml.NVMLError as e:
                logger.debug("mig_processes_unavailable", processes=kind, error=_describe(e))
        return False

    def get_driver_versions(self) -> DriverVersions:
        return DriverVersions(
            driver=self._version(pynvml.nvmlSystemGetDriverVersion, "driver"),
            library=self._version(pynvml.nvmlSystemGetNVMLVersion, "nvml"),
        )

    @staticmethod
    def _version(query: Any, what: str) -> Optional[str]:
        try:
            return _text(query())
        except pynvml.NVMLError as e:
            logger.warning("version_unavailable", component=what, error=_describe(e))
            return None

    # -- Lifecycle ------------------------------------------------------------

    def shutdown(self) -> None:
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            raise _translate(e, "NVML shutdown failed") from e
        logger.info("nvml_shutdown")
