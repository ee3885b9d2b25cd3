"""Unit tests for the NVML driver adapter.

NVML calls are patched at the ``pynvml`` module level, so these tests run
without a GPU.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pynvml
import pytest

from mig_partitioner.adapters.outbound.nvml_device_driver import NvmlDeviceDriver
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.ports.outbound import (
    Created,
    DriverError,
    DriverNotFoundError,
    DriverVersions,
    Exhausted,
    MigDeviceUsage,
    Rejected,
)


def nvml_error(code):
    return pynvml.NVMLError(code)


@pytest.fixture
def mock_nvml():
    """Mock NVML library initialization."""
    with patch("pynvml.nvmlInit") as mock_init, patch("pynvml.nvmlShutdown") as mock_shutdown:
        yield {"init": mock_init, "shutdown": mock_shutdown}


@pytest.fixture
def driver(mock_nvml):
    return NvmlDeviceDriver()


@pytest.mark.unit
class TestLifecycle:
    """Test library initialization and release."""

    def test_init_and_shutdown(self, mock_nvml):
        driver = NvmlDeviceDriver()
        mock_nvml["init"].assert_called_once()
        driver.shutdown()
        mock_nvml["shutdown"].assert_called_once()

    def test_init_failure_is_driver_error(self):
        with patch("pynvml.nvmlInit", side_effect=nvml_error(pynvml.NVML_ERROR_DRIVER_NOT_LOADED)):
            with pytest.raises(DriverError) as exc_info:
                NvmlDeviceDriver()
        assert exc_info.value.code == pynvml.NVML_ERROR_DRIVER_NOT_LOADED


@pytest.mark.unit
class TestDevices:
    """Test device lookups."""

    def test_handle_by_index(self, driver):
        with patch("pynvml.nvmlDeviceGetHandleByIndex", return_value="h0") as by_index:
            assert driver.get_device_handle(0) == "h0"
        by_index.assert_called_once_with(0)

    def test_handle_by_uuid(self, driver):
        with patch("pynvml.nvmlDeviceGetHandleByUUID", return_value="h1") as by_uuid:
            assert driver.get_device_handle("GPU-1234") == "h1"
        by_uuid.assert_called_once_with("GPU-1234")

    @pytest.mark.parametrize("code", [pynvml.NVML_ERROR_INVALID_ARGUMENT, pynvml.NVML_ERROR_NOT_FOUND])
    def test_missing_device(self, driver, code):
        with patch("pynvml.nvmlDeviceGetHandleByIndex", side_effect=nvml_error(code)):
            with pytest.raises(DriverNotFoundError):
                driver.get_device_handle(9)

    def test_identity_decodes_bytes(self, driver):
        with patch("pynvml.nvmlDeviceGetUUID", return_value=b"GPU-abcd"):
            assert driver.get_device_identity("h0") == "GPU-abcd"

    def test_mig_not_supported_is_disabled(self, driver):
        with patch("pynvml.nvmlDeviceGetMigMode", side_effect=nvml_error(pynvml.NVML_ERROR_NOT_SUPPORTED)):
            assert driver.is_mig_enabled("h0") is False

    def test_mig_enabled(self, driver):
        with patch("pynvml.nvmlDeviceGetMigMode", return_value=[pynvml.NVML_DEVICE_MIG_ENABLE, 1]):
            assert driver.is_mig_enabled("h0") is True


@pytest.mark.unit
class TestGpuInstances:
    """Test GPU instance calls and error translation."""

    @pytest.fixture(autouse=True)
    def profile_info(self):
        info = SimpleNamespace(id=19, instanceCount=7)
        with patch("pynvml.nvmlDeviceGetGpuInstanceProfileInfo", return_value=info) as mock_info:
            yield mock_info

    def test_create_passes_profile_id_and_placement(self, driver, profile_info):
        with patch("pynvml.nvmlDeviceCreateGpuInstanceWithPlacement", return_value="gi") as create:
            result = driver.create_instance("h0", 0, Placement(3, 1))

        assert result == Created("gi")
        profile_info.assert_called_once_with("h0", 0)
        device, profile_id, placement_ref = create.call_args.args
        assert (device, profile_id) == ("h0", 19)
        placement = placement_ref._obj
        assert (placement.start, placement.size) == (3, 1)

    def test_insufficient_resources_is_exhausted(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_INSUFFICIENT_RESOURCES)
        with patch("pynvml.nvmlDeviceCreateGpuInstanceWithPlacement", side_effect=error):
            result = driver.create_instance("h0", 0, Placement(0, 1))
        assert isinstance(result, Exhausted)

    def test_other_failure_is_rejected(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_NO_PERMISSION)
        with patch("pynvml.nvmlDeviceCreateGpuInstanceWithPlacement", side_effect=error):
            result = driver.create_instance("h0", 0, Placement(0, 1))
        assert isinstance(result, Rejected)
        assert result.code == pynvml.NVML_ERROR_NO_PERMISSION

    def test_instance_info_accessors(self, driver):
        info = SimpleNamespace(id=5, device="h0", placement=SimpleNamespace(start=2, size=2))
        with patch("pynvml.nvmlGpuInstanceGetInfo", return_value=info), patch(
            "pynvml.nvmlDeviceGetUUID", return_value="GPU-0"
        ):
            assert driver.get_instance_id("gi") == 5
            assert driver.get_instance_placement("gi") == Placement(2, 2)
            assert driver.get_instance_parent_identity("gi") == "GPU-0"

    def test_missing_instance(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_INVALID_ARGUMENT)
        with patch("pynvml.nvmlDeviceGetGpuInstanceById", side_effect=error):
            with pytest.raises(DriverNotFoundError):
                driver.get_instance_by_id("h0", 42)

    def test_destroy_failure(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_IN_USE)
        with patch("pynvml.nvmlGpuInstanceDestroy", side_effect=error):
            with pytest.raises(DriverError) as exc_info:
                driver.destroy_instance("gi")
        assert exc_info.value.code == pynvml.NVML_ERROR_IN_USE

    def test_list_failure(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_UNKNOWN)
        with patch("pynvml.nvmlDeviceGetGpuInstances", side_effect=error):
            with pytest.raises(DriverError):
                driver.list_instances("h0", 0)


@pytest.mark.unit
class TestComputeInstances:
    """Test compute instance calls."""

    def test_template_info_scoped_to_engine_slot(self, driver):
        info = SimpleNamespace(id=0, instanceCount=1)
        with patch("pynvml.nvmlGpuInstanceGetComputeInstanceProfileInfo", return_value=info) as lookup:
            assert driver.get_sub_instance_template_info("gi", 0, 0) is info
        lookup.assert_called_once_with("gi", 0, 0)

    def test_create_uses_profile_id(self, driver):
        with patch("pynvml.nvmlGpuInstanceCreateComputeInstance", return_value="ci") as create:
            result = driver.create_sub_instance("gi", SimpleNamespace(id=3))
        assert result == Created("ci")
        create.assert_called_once_with("gi", 3)

    def test_create_exhausted(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_INSUFFICIENT_RESOURCES)
        with patch("pynvml.nvmlGpuInstanceCreateComputeInstance", side_effect=error):
            assert isinstance(driver.create_sub_instance("gi", SimpleNamespace(id=0)), Exhausted)

    def test_sub_instance_id(self, driver):
        with patch("pynvml.nvmlComputeInstanceGetInfo", return_value=SimpleNamespace(id=1)):
            assert driver.get_sub_instance_id("ci") == 1

    def test_destroy(self, driver):
        destroy = MagicMock()
        with patch("pynvml.nvmlComputeInstanceDestroy", destroy):
            driver.destroy_sub_instance("ci")
        destroy.assert_called_once_with("ci")

    def test_missing_sub_instance(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_NOT_FOUND)
        with patch("pynvml.nvmlGpuInstanceGetComputeInstanceById", side_effect=error):
            with pytest.raises(DriverNotFoundError):
                driver.get_sub_instance_by_id("gi", 7)

    def test_sub_instance_scan_uses_engine_slot(self, driver):
        info = SimpleNamespace(id=4, instanceCount=2)
        with patch(
            "pynvml.nvmlGpuInstanceGetComputeInstanceProfileInfo", return_value=info
        ) as lookup, patch("pynvml.nvmlGpuInstanceGetComputeInstances") as scan:
            assert driver.list_sub_instances("gi", 0, 1) == []
        lookup.assert_called_once_with("gi", 0, 1)
        assert scan.call_args.args[:2] == ("gi", 4)


@pytest.mark.unit
class TestUsage:
    """Test MIG device usage and version queries."""

    @pytest.fixture
    def mig_devices(self):
        """Two populated MIG device slots out of four."""
        handles = {0: "mig0", 2: "mig2"}

        def by_index(device, index):
            if index not in handles:
                raise nvml_error(pynvml.NVML_ERROR_NOT_FOUND)
            return handles[index]

        with patch("pynvml.nvmlDeviceGetMaxMigDeviceCount", return_value=4), patch(
            "pynvml.nvmlDeviceGetMigDeviceHandleByIndex", side_effect=by_index
        ), patch(
            "pynvml.nvmlDeviceGetGpuInstanceId", side_effect=lambda mig: {"mig0": 1, "mig2": 5}[mig]
        ), patch(
            "pynvml.nvmlDeviceGetComputeInstanceId", return_value=0
        ):
            yield handles

    def test_memory_and_activity(self, driver, mig_devices):
        memory = {
            "mig0": SimpleNamespace(total=4864 * 1024 * 1024),
            "mig2": SimpleNamespace(total=9856 * 1024 * 1024),
        }
        with patch("pynvml.nvmlDeviceGetMemoryInfo", side_effect=memory.get), patch(
            "pynvml.nvmlDeviceGetComputeRunningProcesses", return_value=[]
        ), patch(
            "pynvml.nvmlDeviceGetGraphicsRunningProcesses",
            side_effect=lambda mig: [SimpleNamespace(pid=42)] if mig == "mig2" else [],
        ):
            usages = driver.list_mig_devices("h0")

        assert usages == [
            MigDeviceUsage(gi_id=1, ci_id=0, memory_mb=4864, in_use=False),
            MigDeviceUsage(gi_id=5, ci_id=0, memory_mb=9856, in_use=True),
        ]

    def test_failed_queries_leave_fields_unset(self, driver, mig_devices):
        error = nvml_error(pynvml.NVML_ERROR_NOT_SUPPORTED)
        with patch("pynvml.nvmlDeviceGetMemoryInfo", side_effect=error), patch(
            "pynvml.nvmlDeviceGetComputeRunningProcesses", side_effect=error
        ), patch("pynvml.nvmlDeviceGetGraphicsRunningProcesses", side_effect=error):
            usages = driver.list_mig_devices("h0")

        assert [(u.gi_id, u.memory_mb, u.in_use) for u in usages] == [(1, None, False), (5, None, False)]

    def test_enumeration_failure(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_NOT_SUPPORTED)
        with patch("pynvml.nvmlDeviceGetMaxMigDeviceCount", side_effect=error):
            with pytest.raises(DriverError) as exc_info:
                driver.list_mig_devices("h0")
        assert exc_info.value.code == pynvml.NVML_ERROR_NOT_SUPPORTED

    def test_versions(self, driver):
        with patch("pynvml.nvmlSystemGetDriverVersion", return_value=b"550.54.15"), patch(
            "pynvml.nvmlSystemGetNVMLVersion", return_value="12.550.54.15"
        ):
            assert driver.get_driver_versions() == DriverVersions(driver="550.54.15", library="12.550.54.15")

    def test_unreadable_version_is_none(self, driver):
        error = nvml_error(pynvml.NVML_ERROR_UNKNOWN)
        with patch("pynvml.nvmlSystemGetDriverVersion", side_effect=error), patch(
            "pynvml.nvmlSystemGetNVMLVersion", return_value="12.550.54.15"
        ):
            versions = driver.get_driver_versions()
        assert versions.driver is None
        assert versions.library == "12.550.54.15"
