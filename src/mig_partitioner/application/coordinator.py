"""Partition manager application coordinator.

Implements PartitionManagerAPI by resolving profile names and device
references, serializing same-process calls that target the same
partition, and wrapping the domain services with metrics and tracing.

Serialization here only covers callers inside this process. The device's
partition table is shared with every other process driving the device.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator, Hashable, Optional

from opentelemetry import trace

from mig_partitioner.domain.entities.inventory import DeviceRecord, SliceRecord
from mig_partitioner.domain.entities.slice import Slice
from mig_partitioner.domain.errors import (
    DeviceNotFoundError,
    DriverRejectedError,
    InvalidPlacementError,
    PartitionError,
)
from mig_partitioner.domain.services.allocator import PartitionAllocator
from mig_partitioner.domain.services.inventory import SliceInventory
from mig_partitioner.domain.services.profile_catalog import ProfileCatalog
from mig_partitioner.domain.services.reclaimer import PartitionReclaimer
from mig_partitioner.domain.value_objects.identifiers import DeviceIdentity, DeviceRef, parse_device_ref
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.infrastructure.logging import get_logger
from mig_partitioner.infrastructure.metrics import MetricsRegistry
from mig_partitioner.infrastructure.tracing import get_tracer, record_slice
from mig_partitioner.ports.outbound import (
    DeviceCapabilityPort,
    DeviceHandle,
    DriverError,
    DriverNotFoundError,
    DriverVersions,
)

logger = get_logger(__name__)


@dataclass
class _KeyLock:
    """A per-key lock and the number of callers holding or awaiting it."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class PartitionCoordinator:
    """Coordinates slice lifecycle operations with observability.

    Implements PartitionManagerAPI.
    """

    def __init__(
        self,
        driver: DeviceCapabilityPort,
        catalog: ProfileCatalog,
        metrics: Optional[MetricsRegistry] = None,
        tracer: Optional[trace.Tracer] = None,
        locking: bool = True,
    ) -> None:
        """Initialize the coordinator.

        Args:
            driver: Device capability port.
            catalog: Profile catalog.
            metrics: Prometheus registry; metrics are skipped when None.
            tracer: OpenTelemetry tracer; the global tracer is used when None.
            locking: Serialize calls per (device, placement) within this process.
        """
        self._driver = driver
        self._catalog = catalog
        self._allocator = PartitionAllocator(driver)
        self._reclaimer = PartitionReclaimer(driver)
        self._inventory = SliceInventory(driver, catalog)
        self._metrics = metrics
        self._tracer = tracer or get_tracer(__name__)
        self._locking = locking
        self._locks: dict[Hashable, _KeyLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def catalog(self) -> ProfileCatalog:
        return self._catalog

    def create_slice(self, device_ref: DeviceRef, profile_name: str, start: int) -> Slice:
        """Allocate a slice of a catalog profile at a start slot.

        Returns:
            Slice in READY state.

        Raises:
            PartitionError: Any lifecycle failure, see domain.errors.
        """
        ref = self._device_ref(device_ref)
        attributes = {"device": str(ref), "profile": profile_name, "placement.start": start}
        with self._observe("create", attributes) as span:
            profile = self._catalog.lookup(profile_name)
            placement = self._placement(start, profile.slot_width, profile_name)
            device = self._resolve(ref)
            identity = self._identity(device, ref)
            with self._serialized((identity, placement)):
                slice_ = self._allocator.allocate(device, profile, placement)
            record_slice(span, slice_)

        if self._metrics:
            outcome = "reused" if slice_.reused else "created"
            self._metrics.slices_allocated_total.labels(profile=profile.name, outcome=outcome).inc()
        logger.info(
            "slice_created",
            device=slice_.device,
            profile=profile.name,
            placement=str(placement),
            gi_id=slice_.gi_id,
            ci_id=slice_.ci_id,
            reused=slice_.reused,
        )
        return slice_

    def delete_slice(self, device_ref: DeviceRef, gi_id: int, ci_id: int) -> None:
        """Tear a slice down, compute instance first.

        Raises:
            PartitionError: Any lifecycle failure, see domain.errors.
        """
        ref = self._device_ref(device_ref)
        attributes = {"device": str(ref), "gi_id": gi_id, "ci_id": ci_id}
        with self._observe("delete", attributes):
            identity = self._identity(self._resolve(ref), ref)
            with self._serialized((identity, "gi", gi_id)):
                self._reclaimer.reclaim(ref, gi_id, ci_id)

        if self._metrics:
            self._metrics.slices_reclaimed_total.inc()
        logger.info("slice_deleted", device=identity, gi_id=gi_id, ci_id=ci_id)

    def list_devices(self) -> list[DeviceRecord]:
        with self._observe("list_devices", {}):
            return self._inventory.devices()

    def list_slices(self) -> list[SliceRecord]:
        with self._observe("list_slices", {}):
            records = self._inventory.slices()

        if self._metrics:
            per_device: dict[str, int] = {}
            for record in records:
                per_device[record.device] = per_device.get(record.device, 0) + 1
            for device, count in per_device.items():
                self._metrics.live_slices.labels(device=device).set(count)
        return records

    def free_placements(self, device_ref: DeviceRef, profile_name: str) -> list[Placement]:
        ref = self._device_ref(device_ref)
        with self._observe("free_placements", {"device": str(ref), "profile": profile_name}):
            return self._inventory.free_placements(ref, profile_name)

    def driver_versions(self) -> DriverVersions:
        with self._observe("driver_versions", {}):
            return self._inventory.versions()

    # -- Helpers --------------------------------------------------------------

    @staticmethod
    def _device_ref(value: DeviceRef) -> DeviceRef:
        try:
            return parse_device_ref(value)
        except ValueError as e:
            raise DeviceNotFoundError(str(e), device=str(value)) from e

    @staticmethod
    def _placement(start: int, width: int, profile_name: str) -> Placement:
        try:
            return Placement(start, width)
        except ValueError as e:
            raise InvalidPlacementError(str(e), profile=profile_name) from e

    def _resolve(self, ref: DeviceRef) -> DeviceHandle:
        try:
            return self._driver.get_device_handle(ref)
        except DriverNotFoundError as e:
            raise DeviceNotFoundError("Device does not resolve", device=str(ref)) from e
        except DriverError as e:
            raise DriverRejectedError(f"Device lookup failed: {e}", device=str(ref), driver_code=e.code) from e

    def _identity(self, device: DeviceHandle, ref: DeviceRef) -> DeviceIdentity:
        try:
            return self._driver.get_device_identity(device)
        except DriverError as e:
            raise DriverRejectedError(
                f"Could not read device identity: {e}", device=str(ref), driver_code=e.code
            ) from e

    @contextmanager
    def _serialized(self, key: Hashable) -> Generator[None, None, None]:
        """Hold the in-process lock for a partition key.

        The lock is dropped from the registry once its last holder or waiter
        leaves, so the registry only holds keys with calls in flight.
        """
        if not self._locking:
            yield
            return
        with self._locks_guard:
            entry = self._locks.setdefault(key, _KeyLock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    @contextmanager
    def _observe(self, operation: str, attributes: dict[str, Any]) -> Generator[trace.Span, None, None]:
        """Trace an operation and record its latency and failures."""
        started = time.perf_counter()
        with self._tracer.start_as_current_span(f"slice.{operation}", attributes=attributes) as span:
            try:
                yield span
            except PartitionError as e:
                span.set_attribute("error.kind", e.kind.value)
                if self._metrics:
                    self._metrics.operation_failures_total.labels(operation=operation, kind=e.kind.value).inc()
                logger.warning(f"{operation}_failed", kind=e.kind.value, error=str(e), **e.context)
                raise
            finally:
                if self._metrics:
                    self._metrics.operation_latency_seconds.labels(operation=operation).observe(
                        time.perf_counter() - started
                    )
