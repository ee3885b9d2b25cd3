"""Placement value object: a contiguous span of partitionable slots."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Placement:
    """Contiguous span ``[start, start + size)`` within a device's slot space."""

    start: int
    size: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError(f"Placement start must be non-negative, got {self.start}")
        if self.size < 1:
            raise ValueError(f"Placement size must be positive, got {self.size}")

    @property
    def end(self) -> int:
        """First slot past the span."""
        return self.start + self.size

    def overlaps(self, other: Placement) -> bool:
        """Check whether two spans share at least one slot."""
        return self.start < other.end and other.start < self.end

    def __str__(self) -> str:
        return f"{self.start}:{self.size}"
