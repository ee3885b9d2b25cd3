"""FastAPI REST adapter for the partition manager.

Provides HTTP endpoints for slice creation, teardown and inventory.

Usage:
    from mig_partitioner.adapters.inbound.rest_api import create_app

    app = create_app(coordinator)
    # Run with: uvicorn module:app --host 0.0.0.0 --port 8080

References:
    - ports/inbound/api.py (PartitionManagerAPI interface)
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mig_partitioner.domain.entities.inventory import DeviceRecord, SliceRecord
from mig_partitioner.domain.entities.slice import Slice
from mig_partitioner.domain.errors import ErrorKind, PartitionError
from mig_partitioner.ports.inbound.api import PartitionManagerAPI


STATUS_BY_KIND = {
    ErrorKind.DEVICE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSTANCE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PROFILE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PARTITION_UNAVAILABLE: status.HTTP_409_CONFLICT,
    ErrorKind.RESOURCE_EXHAUSTED: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_PLACEMENT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.DRIVER_REJECTED: status.HTTP_502_BAD_GATEWAY,
}


class SliceCreateRequest(BaseModel):
    """Request to create a slice."""

    device: str = Field(..., min_length=1, description="Device index or UUID")
    profile: str = Field(..., min_length=1, description="Catalog profile name, e.g. 1g.5gb")
    start: int = Field(..., ge=0, description="First placement slot")


class SliceResponse(BaseModel):
    """A slice as seen by clients."""

    device: str
    profile: str
    placement_start: int
    placement_size: int
    gi_id: Optional[int]
    ci_id: Optional[int]
    state: str
    reused: bool = False
    memory_mb: Optional[int] = None
    in_use: bool = False

    @classmethod
    def from_slice(cls, slice_: Slice) -> "SliceResponse":
        return cls(
            device=slice_.device,
            profile=slice_.profile.name,
            placement_start=slice_.placement.start,
            placement_size=slice_.placement.size,
            gi_id=slice_.gi_id,
            ci_id=slice_.ci_id,
            state=slice_.state.value,
            reused=slice_.reused,
        )

    @classmethod
    def from_record(cls, record: SliceRecord) -> "SliceResponse":
        return cls(
            device=record.device,
            profile=record.profile_name,
            placement_start=record.placement.start,
            placement_size=record.placement.size,
            gi_id=record.gi_id,
            ci_id=record.ci_id,
            state=record.state.value,
            memory_mb=record.memory_mb,
            in_use=record.in_use,
        )


class DeviceResponse(BaseModel):
    """Device inventory entry."""

    index: int
    identity: str
    name: str
    mig_enabled: bool

    @classmethod
    def from_record(cls, record: DeviceRecord) -> "DeviceResponse":
        return cls(
            index=record.index,
            identity=record.identity,
            name=record.name,
            mig_enabled=record.mig_enabled,
        )


class PlacementResponse(BaseModel):
    """A placement range."""

    start: int
    size: int


class ErrorResponse(BaseModel):
    """Error body returned for every lifecycle failure."""

    kind: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    devices: int
    profiles: list[str]
    driver_version: Optional[str] = None
    nvml_version: Optional[str] = None


def create_app(coordinator: PartitionManagerAPI) -> FastAPI:
    """Create FastAPI application with partition manager endpoints.

    Args:
        coordinator: PartitionCoordinator instance.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="MIG Partitioner API",
        description="GPU slice lifecycle management",
        version="0.1.0",
    )

    @app.exception_handler(PartitionError)
    async def partition_error_handler(request: Request, exc: PartitionError) -> JSONResponse:
        body = ErrorResponse(kind=exc.kind.value, message=exc.message, context=exc.context)
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=body.model_dump())

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    def health_check():
        """Check driver reachability."""
        devices = coordinator.list_devices()
        versions = coordinator.driver_versions()
        return HealthResponse(
            status="healthy",
            devices=len(devices),
            profiles=coordinator.catalog.names(),
            driver_version=versions.driver,
            nvml_version=versions.library,
        )

    @app.get("/devices", response_model=list[DeviceResponse], tags=["Inventory"])
    def list_devices():
        """List devices and whether partitioning is enabled."""
        return [DeviceResponse.from_record(r) for r in coordinator.list_devices()]

    @app.get(
        "/devices/{device}/free-placements",
        response_model=list[PlacementResponse],
        tags=["Inventory"],
    )
    def free_placements(device: str, profile: str):
        """Placements where a profile could be created right now."""
        return [
            PlacementResponse(start=p.start, size=p.size)
            for p in coordinator.free_placements(device, profile)
        ]

    @app.get("/slices", response_model=list[SliceResponse], tags=["Slices"])
    def list_slices():
        """List live slices on every partitioned device."""
        return [SliceResponse.from_record(r) for r in coordinator.list_slices()]

    @app.post(
        "/slices",
        response_model=SliceResponse,
        status_code=status.HTTP_201_CREATED,
        responses={409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
        tags=["Slices"],
    )
    def create_slice(request: SliceCreateRequest):
        """Create a slice, or return the identical one already live."""
        slice_ = coordinator.create_slice(request.device, request.profile, request.start)
        return SliceResponse.from_slice(slice_)

    @app.delete(
        "/slices/{device}/{gi_id}/{ci_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
        tags=["Slices"],
    )
    def delete_slice(device: str, gi_id: int, ci_id: int):
        """Tear a slice down, compute instance first."""
        coordinator.delete_slice(device, gi_id, ci_id)

    return app
