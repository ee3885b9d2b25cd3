"""Pytest configuration and shared fixtures for partition manager tests."""

from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from mig_partitioner.adapters.outbound.mock_device_driver import MockDeviceDriver
from mig_partitioner.application.coordinator import PartitionCoordinator
from mig_partitioner.domain.services.allocator import PartitionAllocator
from mig_partitioner.domain.services.profile_catalog import ProfileCatalog
from mig_partitioner.domain.services.reclaimer import PartitionReclaimer
from mig_partitioner.infrastructure.config import Config, DriverConfig
from mig_partitioner.infrastructure.container import Container
from mig_partitioner.infrastructure.metrics import MetricsRegistry


@pytest.fixture(autouse=True)
def reset_container():
    """Reset the DI container before each test."""
    Container.reset()
    yield
    Container.reset()


@pytest.fixture
def test_config() -> Config:
    """Provide a mock-backed configuration with two devices."""
    return Config(driver=DriverConfig(backend="mock", mock_device_count=2))


@pytest.fixture
def catalog() -> ProfileCatalog:
    """Provide the A100 profile catalog."""
    return ProfileCatalog.for_device_model("A100")


@pytest.fixture
def mock_driver(catalog: ProfileCatalog) -> MockDeviceDriver:
    """Provide an in-memory driver with two A100s."""
    return MockDeviceDriver.from_catalog(catalog, device_count=2)


@pytest.fixture
def allocator(mock_driver: MockDeviceDriver) -> PartitionAllocator:
    return PartitionAllocator(mock_driver)


@pytest.fixture
def reclaimer(mock_driver: MockDeviceDriver) -> PartitionReclaimer:
    return PartitionReclaimer(mock_driver)


@pytest.fixture
def metrics() -> MetricsRegistry:
    """Provide metrics on a private registry so tests do not collide."""
    return MetricsRegistry(CollectorRegistry())


@pytest.fixture
def coordinator(
    mock_driver: MockDeviceDriver, catalog: ProfileCatalog, metrics: MetricsRegistry
) -> PartitionCoordinator:
    return PartitionCoordinator(mock_driver, catalog, metrics=metrics)


@pytest.fixture
def container(test_config: Config, metrics: MetricsRegistry) -> Container:
    """Provide a mock-backed container for testing."""
    with patch("mig_partitioner.infrastructure.container.setup_tracing"):
        return Container.create(config=test_config, metrics=metrics)


# Pytest markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "gpu: mark test as requiring a MIG-capable GPU")
