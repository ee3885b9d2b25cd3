"""Inbound adapters for the partition manager.

Provides the REST API and the command-line interface.
"""

from mig_partitioner.adapters.inbound.cli import main
from mig_partitioner.adapters.inbound.rest_api import create_app

__all__ = ["create_app", "main"]
