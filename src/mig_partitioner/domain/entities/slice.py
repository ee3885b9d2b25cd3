"""Slice entity and its lifecycle.

A slice is the unit a caller thinks of as "one partition": a GPU instance,
the compute instance inside it, and the device/profile/placement it came
from. Its state is tracked explicitly rather than inferred from which ids
happen to be populated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from mig_partitioner.domain.entities.profile import Profile
from mig_partitioner.domain.value_objects.identifiers import (
    ComputeInstanceId,
    DeviceIdentity,
    GpuInstanceId,
)
from mig_partitioner.domain.value_objects.placement import Placement


class SliceState(Enum):
    """Slice lifecycle state."""
    ABSENT = "absent"              # Nothing on the device
    GI_CREATED = "gi_created"      # GPU instance exists, no compute instance
    READY = "ready"                # GI + CI, workloads may attach
    CI_DESTROYED = "ci_destroyed"  # CI gone, GI still present


# Allowed transitions, source -> targets
_TRANSITIONS: dict[SliceState, frozenset[SliceState]] = {
    SliceState.ABSENT: frozenset({SliceState.GI_CREATED}),
    SliceState.GI_CREATED: frozenset({SliceState.READY}),
    SliceState.READY: frozenset({SliceState.CI_DESTROYED}),
    SliceState.CI_DESTROYED: frozenset({SliceState.ABSENT}),
}


class SliceStateError(ValueError):
    """Raised on a transition the slice lifecycle does not allow."""

    pass


@dataclass
class Slice:
    """One partition on one device."""
    device: DeviceIdentity
    profile: Profile
    placement: Placement
    state: SliceState = SliceState.ABSENT
    gi_id: Optional[GpuInstanceId] = None
    ci_id: Optional[ComputeInstanceId] = None
    gi_reused: bool = False   # GI recovered by reconciliation
    ci_reused: bool = False   # CI recovered by reconciliation
    history: list[SliceState] = field(default_factory=list)

    def _transition(self, target: SliceState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise SliceStateError(
                f"Slice {self.device}/{self.placement} cannot go from "
                f"{self.state.value} to {target.value}"
            )
        self.history.append(self.state)
        self.state = target

    def mark_gi_created(self, gi_id: GpuInstanceId, reused: bool = False) -> None:
        """Record the GPU instance backing this slice."""
        self._transition(SliceState.GI_CREATED)
        self.gi_id = gi_id
        self.gi_reused = reused

    def mark_ready(self, ci_id: ComputeInstanceId, reused: bool = False) -> None:
        """Record the compute instance; the slice can now take workloads."""
        self._transition(SliceState.READY)
        self.ci_id = ci_id
        self.ci_reused = reused

    def mark_ci_destroyed(self) -> None:
        """Record that the compute instance has been torn down."""
        self._transition(SliceState.CI_DESTROYED)
        self.ci_id = None

    def mark_absent(self) -> None:
        """Record that the GPU instance has been torn down."""
        self._transition(SliceState.ABSENT)
        self.gi_id = None

    @property
    def is_ready(self) -> bool:
        """Check if workloads may attach to this slice."""
        return self.state == SliceState.READY

    @property
    def reused(self) -> bool:
        """True if any part of the slice already existed before allocation."""
        return self.gi_reused or self.ci_reused
