"""Application layer for the partition manager."""

from mig_partitioner.application.coordinator import PartitionCoordinator

__all__ = ["PartitionCoordinator"]
