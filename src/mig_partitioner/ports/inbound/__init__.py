"""Inbound ports - API offered by the partition manager."""

from mig_partitioner.ports.inbound.api import PartitionManagerAPI

__all__ = ["PartitionManagerAPI"]
