"""Partition-related type-safe identifiers.

These value objects provide type safety for device and instance identifiers
using Python's NewType for zero-runtime overhead.
"""

from __future__ import annotations

from typing import NewType, Union

# Device unique identifier (UUID reported by the driver)
DeviceIdentity = NewType("DeviceIdentity", str)

# GPU instance id, scoped to its parent device
GpuInstanceId = NewType("GpuInstanceId", int)

# Compute instance id, scoped to its parent GPU instance
ComputeInstanceId = NewType("ComputeInstanceId", int)

# How callers select a device: an index or a UUID
DeviceRef = Union[int, str]


def parse_device_ref(value: DeviceRef) -> DeviceRef:
    """Normalize a device reference.

    Numeric strings (as typed on a command line or in a URL path) are
    treated as indices; everything else is passed through as a UUID.
    """
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Device index must be non-negative, got {value}")
        return value
    text = value.strip()
    if not text:
        raise ValueError("Device reference must not be empty")
    if text.isdigit():
        return int(text)
    return text
