"""Outbound adapters - Implementations of the device capability port.

Provides an NVML-backed driver and an in-memory mock for testing and
development on hosts without partitionable GPUs.
"""

from mig_partitioner.adapters.outbound.mock_device_driver import (
    MockComputeInstance,
    MockDevice,
    MockDeviceDriver,
    MockGpuInstance,
)
from mig_partitioner.adapters.outbound.nvml_device_driver import NvmlDeviceDriver

__all__ = [
    # NVML
    "NvmlDeviceDriver",
    # Mock
    "MockDeviceDriver",
    "MockDevice",
    "MockGpuInstance",
    "MockComputeInstance",
]
