"""MIG partitioner: GPU slice lifecycle management."""

__version__ = "0.1.0"
