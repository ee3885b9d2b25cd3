"""Integration tests for slice lifecycle through the coordinator, REST API and CLI."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pynvml
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from mig_partitioner.adapters.inbound.cli import main
from mig_partitioner.adapters.inbound.rest_api import create_app
from mig_partitioner.application.coordinator import PartitionCoordinator
from mig_partitioner.domain.errors import (
    DeviceNotFoundError,
    DriverRejectedError,
    PartitionUnavailableError,
    ProfileNotFoundError,
)
from mig_partitioner.domain.value_objects.placement import Placement
from mig_partitioner.infrastructure.config import get_config
from mig_partitioner.infrastructure.container import Container
from mig_partitioner.ports.outbound import DriverStatus


def sample(metrics, name, labels=None):
    return metrics.registry.get_sample_value(name, labels or {}) or 0


@pytest.mark.integration
class TestCoordinator:
    """Test the application coordinator end to end on the mock driver."""

    def test_create_list_delete(self, coordinator, mock_driver):
        slice_ = coordinator.create_slice("0", "2g.10gb", 2)
        assert slice_.placement == Placement(2, 2)

        [record] = coordinator.list_slices()
        assert (record.gi_id, record.ci_id) == (slice_.gi_id, slice_.ci_id)

        coordinator.delete_slice(0, slice_.gi_id, slice_.ci_id)
        assert coordinator.list_slices() == []

    def test_create_is_idempotent(self, coordinator, metrics):
        first = coordinator.create_slice(0, "1g.5gb", 6)
        second = coordinator.create_slice("GPU-mock-0000", "1g.5gb", 6)

        assert second.gi_id == first.gi_id
        assert second.reused
        assert sample(metrics, "mig_slices_allocated_total", {"profile": "1g.5gb", "outcome": "created"}) == 1
        assert sample(metrics, "mig_slices_allocated_total", {"profile": "1g.5gb", "outcome": "reused"}) == 1

    def test_same_placement_on_two_devices(self, coordinator):
        a = coordinator.create_slice(0, "1g.5gb", 0)
        b = coordinator.create_slice(1, "1g.5gb", 0)
        assert a.device != b.device
        assert not b.reused

    def test_unknown_profile(self, coordinator, mock_driver, metrics):
        with pytest.raises(ProfileNotFoundError):
            coordinator.create_slice(0, "5g.1tb", 0)
        assert mock_driver.call_count("create_instance") == 0
        assert sample(
            metrics, "mig_operation_failures_total", {"operation": "create", "kind": "ProfileNotFound"}
        ) == 1

    def test_unknown_device(self, coordinator):
        with pytest.raises(DeviceNotFoundError):
            coordinator.create_slice("GPU-gone", "1g.5gb", 0)
        with pytest.raises(DeviceNotFoundError):
            coordinator.create_slice("", "1g.5gb", 0)

    def test_unavailable_placement(self, coordinator):
        coordinator.create_slice(0, "7g.40gb", 0)
        with pytest.raises(PartitionUnavailableError):
            coordinator.create_slice(0, "1g.5gb", 3)

    def test_partial_delete_surfaces(self, coordinator, mock_driver, metrics):
        slice_ = coordinator.create_slice(0, "1g.5gb", 1)
        mock_driver.inject_failure("destroy_sub_instance", DriverStatus.IN_USE)

        with pytest.raises(DriverRejectedError):
            coordinator.delete_slice(0, slice_.gi_id, slice_.ci_id)

        assert len(coordinator.list_slices()) == 1
        assert sample(metrics, "mig_slices_reclaimed_total") == 0

    def test_live_slices_gauge(self, coordinator, metrics):
        coordinator.create_slice(0, "1g.5gb", 0)
        coordinator.create_slice(0, "1g.5gb", 1)
        coordinator.list_slices()
        assert sample(metrics, "mig_live_slices", {"device": "GPU-mock-0000"}) == 2

    @pytest.mark.parametrize("locking", [True, False])
    def test_concurrent_creates_converge(self, mock_driver, catalog, metrics, locking):
        """Racing creates of one slice all end on a single GPU instance."""
        coordinator = PartitionCoordinator(mock_driver, catalog, metrics=metrics, locking=locking)

        with ThreadPoolExecutor(max_workers=8) as pool:
            slices = list(pool.map(lambda _: coordinator.create_slice(0, "1g.5gb", 4), range(16)))

        assert len({s.gi_id for s in slices}) == 1
        assert len({s.ci_id for s in slices}) == 1
        assert len(mock_driver.get_device(0).instances) == 1

    def test_lock_registry_drains(self, coordinator):
        """Per-partition locks are released once no call holds or awaits them."""
        with ThreadPoolExecutor(max_workers=4) as pool:
            slices = list(pool.map(lambda start: coordinator.create_slice(0, "1g.5gb", start), range(8)))
        assert coordinator._locks == {}

        for slice_ in slices:
            coordinator.delete_slice(0, slice_.gi_id, slice_.ci_id)
        with pytest.raises(DeviceNotFoundError):
            coordinator.delete_slice("GPU-gone", 1, 0)
        assert coordinator._locks == {}

    def test_failed_create_releases_lock(self, coordinator, mock_driver):
        mock_driver.inject_failure("create_instance", DriverStatus.NO_PERMISSION)
        with pytest.raises(DriverRejectedError):
            coordinator.create_slice(0, "1g.5gb", 0)
        assert coordinator._locks == {}
        assert coordinator.create_slice(0, "1g.5gb", 0).gi_id is not None

    def test_slices_report_usage(self, coordinator, mock_driver):
        slice_ = coordinator.create_slice(0, "2g.10gb", 0)
        mock_driver.mark_in_use(0, slice_.gi_id, slice_.ci_id)
        [record] = coordinator.list_slices()
        assert record.memory_mb == 2 * 4864
        assert record.in_use

    def test_driver_versions(self, coordinator):
        assert coordinator.driver_versions().library == "mock"


@pytest.mark.integration
class TestCoordinatorSpans:
    """Test the spans the coordinator emits."""

    @pytest.fixture
    def exporter(self):
        return InMemorySpanExporter()

    @pytest.fixture
    def traced(self, mock_driver, catalog, exporter):
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        return PartitionCoordinator(mock_driver, catalog, tracer=provider.get_tracer("test"))

    def test_create_span_carries_slice(self, traced, exporter):
        slice_ = traced.create_slice(0, "2g.10gb", 2)

        [span] = exporter.get_finished_spans()
        assert span.name == "slice.create"
        assert span.attributes["profile"] == "2g.10gb"
        assert span.attributes["slice.device"] == "GPU-mock-0000"
        assert span.attributes["slice.placement"] == "2:2"
        assert span.attributes["slice.state"] == "ready"
        assert span.attributes["slice.reused"] is False
        assert span.attributes["slice.gi_id"] == slice_.gi_id
        assert span.attributes["slice.ci_id"] == slice_.ci_id

    def test_failed_span_carries_error_kind(self, traced, exporter):
        with pytest.raises(ProfileNotFoundError):
            traced.create_slice(0, "5g.1tb", 0)

        [span] = exporter.get_finished_spans()
        assert span.attributes["error.kind"] == "ProfileNotFound"
        assert "slice.gi_id" not in span.attributes


@pytest.mark.integration
class TestRestApi:
    """Test the REST adapter."""

    @pytest.fixture
    def client(self, coordinator):
        return TestClient(create_app(coordinator))

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["devices"] == 2
        assert "1g.5gb" in body["profiles"]
        assert body["driver_version"] == "mock"
        assert body["nvml_version"] == "mock"

    def test_devices(self, client):
        response = client.get("/devices")
        assert [d["identity"] for d in response.json()] == ["GPU-mock-0000", "GPU-mock-0001"]

    def test_slice_lifecycle(self, client):
        response = client.post("/slices", json={"device": "0", "profile": "1g.5gb", "start": 3})
        assert response.status_code == 201
        created = response.json()
        assert created["placement_start"] == 3
        assert created["state"] == "ready"
        assert created["reused"] is False

        again = client.post("/slices", json={"device": "0", "profile": "1g.5gb", "start": 3})
        assert again.status_code == 201
        assert again.json()["gi_id"] == created["gi_id"]
        assert again.json()["reused"] is True

        listed = client.get("/slices").json()
        assert len(listed) == 1
        assert listed[0]["memory_mb"] == 4864
        assert listed[0]["in_use"] is False

        response = client.delete(f"/slices/0/{created['gi_id']}/{created['ci_id']}")
        assert response.status_code == 204
        assert client.get("/slices").json() == []

    def test_free_placements(self, client):
        client.post("/slices", json={"device": "0", "profile": "3g.20gb", "start": 0})
        response = client.get("/devices/0/free-placements", params={"profile": "3g.20gb"})
        assert response.json() == [{"start": 4, "size": 4}]

    def test_unavailable_is_conflict(self, client):
        client.post("/slices", json={"device": "0", "profile": "7g.40gb", "start": 0})
        response = client.post("/slices", json={"device": "0", "profile": "1g.5gb", "start": 0})
        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "PartitionUnavailable"
        assert body["context"]["placement"] == "0:1"
        assert body["context"]["device"] == "GPU-mock-0000"

    def test_unknown_profile_is_not_found(self, client):
        response = client.post("/slices", json={"device": "0", "profile": "nope", "start": 0})
        assert response.status_code == 404
        assert response.json()["kind"] == "ProfileNotFound"

    def test_unknown_instance_is_not_found(self, client):
        response = client.delete("/slices/0/9/0")
        assert response.status_code == 404
        assert response.json()["kind"] == "InstanceNotFound"

    def test_driver_rejection_is_bad_gateway(self, client):
        response = client.post("/slices", json={"device": "0", "profile": "3g.20gb", "start": 2})
        assert response.status_code == 502
        assert response.json()["context"]["driver_code"] == DriverStatus.INVALID_ARGUMENT

    def test_negative_start_rejected(self, client):
        response = client.post("/slices", json={"device": "0", "profile": "1g.5gb", "start": -1})
        assert response.status_code == 422


@pytest.mark.integration
class TestCli:
    """Test the command-line adapter against a mock-backed container."""

    def test_create_list_delete(self, container, capsys):
        assert main(["create", "-g", "0", "-p", "1g.5gb", "-s", "2"]) == 0
        out = capsys.readouterr().out
        assert "Created 1g.5gb on GPU-mock-0000 at 2:1" in out

        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert "GPU 0:" in out
        assert "placement=2:1" in out

        [record] = container.coordinator.list_slices()
        assert main(["delete", "-g", "0", "--gi", str(record.gi_id), "--ci", str(record.ci_id)]) == 0
        assert container.coordinator.list_slices() == []

    def test_repeat_create_reports_reuse(self, container, capsys):
        main(["create", "-g", "1", "-p", "2g.10gb", "-s", "0"])
        capsys.readouterr()
        assert main(["create", "-g", "1", "-p", "2g.10gb", "-s", "0"]) == 0
        assert capsys.readouterr().out.startswith("Reused")

    def test_free(self, container, capsys):
        assert main(["free", "-g", "0", "-p", "7g.40gb"]) == 0
        assert capsys.readouterr().out.strip() == "0:8"

    def test_failure_exit_code(self, container, capsys):
        assert main(["delete", "-g", "0", "--gi", "3", "--ci", "0"]) == 1
        assert "[InstanceNotFound]" in capsys.readouterr().err

    def test_list_reports_usage(self, container, capsys):
        main(["create", "-g", "0", "-p", "1g.5gb", "-s", "0"])
        main(["create", "-g", "0", "-p", "1g.5gb", "-s", "1"])
        [busy, _] = container.coordinator.list_slices()
        container.driver.mark_in_use(0, busy.gi_id, busy.ci_id)
        capsys.readouterr()

        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert "Driver Version: mock" in out
        assert "NVML Version: mock" in out
        assert "memory=4864MB in_use=yes" in out
        assert "Found 2 MIG devices: 1 used, 1 available" in out

    def test_caller_container_survives(self, container):
        assert main(["list"]) == 0
        assert Container.is_initialized()
        assert container.driver.call_count("shutdown") == 0


@pytest.mark.integration
class TestCliNvml:
    """Test the command-line adapter building its own NVML-backed container."""

    @pytest.fixture(autouse=True)
    def nvml_config(self, monkeypatch):
        monkeypatch.delenv("MIG_PARTITIONER_DRIVER__BACKEND", raising=False)
        get_config.cache_clear()
        with patch("mig_partitioner.infrastructure.container.setup_tracing"):
            yield
        get_config.cache_clear()

    def test_init_failure_exits_with_error_kind(self, capsys):
        error = pynvml.NVMLError(pynvml.NVML_ERROR_DRIVER_NOT_LOADED)
        with patch("pynvml.nvmlInit", side_effect=error):
            assert main(["list"]) == 1

        err = capsys.readouterr().err
        assert "[DriverRejected]" in err
        assert f"driver_code={pynvml.NVML_ERROR_DRIVER_NOT_LOADED}" in err
        assert not Container.is_initialized()

    def test_driver_released_on_exit(self, capsys):
        with patch("pynvml.nvmlInit"), patch("pynvml.nvmlShutdown") as shutdown, patch(
            "pynvml.nvmlDeviceGetCount", return_value=0
        ), patch("pynvml.nvmlSystemGetDriverVersion", return_value="550.54.15"), patch(
            "pynvml.nvmlSystemGetNVMLVersion", return_value="12.550.54.15"
        ):
            assert main(["list"]) == 0

        shutdown.assert_called_once()
        assert not Container.is_initialized()
        out = capsys.readouterr().out
        assert "Driver Version: 550.54.15" in out
        assert "Found 0 MIG devices: 0 used, 0 available" in out

    def test_driver_released_after_failed_command(self, capsys):
        with patch("pynvml.nvmlInit"), patch("pynvml.nvmlShutdown") as shutdown, patch(
            "pynvml.nvmlDeviceGetHandleByIndex",
            side_effect=pynvml.NVMLError(pynvml.NVML_ERROR_INVALID_ARGUMENT),
        ):
            assert main(["free", "-g", "3", "-p", "1g.5gb"]) == 1

        shutdown.assert_called_once()
        assert "[DeviceNotFound]" in capsys.readouterr().err
