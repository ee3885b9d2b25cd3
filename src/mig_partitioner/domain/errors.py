"""Error taxonomy for partition lifecycle operations.

Every error carries the identifiers an operator needs to inspect driver
state by hand: the device, profile, placement, and any GI/CI ids that
were already mutated when the call failed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from mig_partitioner.domain.entities.slice import SliceState
from mig_partitioner.domain.value_objects.placement import Placement


class ErrorKind(Enum):
    """Abstract error kinds, independent of any driver's status codes."""
    DEVICE_NOT_FOUND = "DeviceNotFound"
    INSTANCE_NOT_FOUND = "InstanceNotFound"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    PARTITION_UNAVAILABLE = "PartitionUnavailable"
    DRIVER_REJECTED = "DriverRejected"
    PROFILE_NOT_FOUND = "ProfileNotFound"
    INVALID_PLACEMENT = "InvalidPlacement"


class PartitionError(Exception):
    """Base class for partition lifecycle failures."""

    kind: ErrorKind = ErrorKind.DRIVER_REJECTED

    def __init__(
        self,
        message: str,
        *,
        device: Optional[str] = None,
        profile: Optional[str] = None,
        placement: Optional[Placement] = None,
        gi_id: Optional[int] = None,
        ci_id: Optional[int] = None,
        driver_code: Optional[int] = None,
        state: Optional[SliceState] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.device = device
        self.profile = profile
        self.placement = placement
        self.gi_id = gi_id
        self.ci_id = ci_id
        self.driver_code = driver_code
        self.state = state

    @property
    def context(self) -> dict[str, Any]:
        """Identifiers attached to this failure, without empty fields."""
        values = {
            "device": self.device,
            "profile": self.profile,
            "placement": str(self.placement) if self.placement else None,
            "gi_id": self.gi_id,
            "ci_id": self.ci_id,
            "driver_code": self.driver_code,
            "state": self.state.value if self.state else None,
        }
        return {k: v for k, v in values.items() if v is not None}

    def __str__(self) -> str:
        details = " ".join(f"{k}={v}" for k, v in self.context.items())
        if details:
            return f"[{self.kind.value}] {self.message} ({details})"
        return f"[{self.kind.value}] {self.message}"


class DeviceNotFoundError(PartitionError):
    """Device index or identity does not resolve."""

    kind = ErrorKind.DEVICE_NOT_FOUND


class InstanceNotFoundError(PartitionError):
    """A GI or CI id does not resolve under its expected parent."""

    kind = ErrorKind.INSTANCE_NOT_FOUND


class ResourceExhaustedError(PartitionError):
    """The template's resource pool is fully subscribed on the device."""

    kind = ErrorKind.RESOURCE_EXHAUSTED


class PartitionUnavailableError(PartitionError):
    """Resources exhausted and no existing partition matches the request."""

    kind = ErrorKind.PARTITION_UNAVAILABLE


class DriverRejectedError(PartitionError):
    """Any other driver-reported failure. Not retried."""

    kind = ErrorKind.DRIVER_REJECTED


class ProfileNotFoundError(PartitionError, LookupError):
    """Profile name is not in the catalog."""

    kind = ErrorKind.PROFILE_NOT_FOUND


class InvalidPlacementError(PartitionError, ValueError):
    """Placement does not fit the requested profile."""

    kind = ErrorKind.INVALID_PLACEMENT
