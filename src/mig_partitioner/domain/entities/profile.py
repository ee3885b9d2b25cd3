"""Partition profile entity."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Profile:
    """Named template pairing a GPU instance template with a compute template.

    Attributes:
        name: Human-readable name, e.g. "1g.5gb".
        instance_template_id: GPU instance profile id understood by the driver.
        sub_instance_template_id: Compute instance profile id inside the GI.
        slot_width: Number of placement slots one instance occupies.
    """

    name: str
    instance_template_id: int
    sub_instance_template_id: int
    slot_width: int

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Profile name must not be empty")
        if self.instance_template_id < 0 or self.sub_instance_template_id < 0:
            raise ValueError(f"Profile {self.name} has a negative template id")
        if self.slot_width < 1:
            raise ValueError(f"Profile {self.name} must occupy at least one slot")
