"""Dependency injection container for the partition manager."""

from dataclasses import dataclass

import structlog
from opentelemetry import trace

from mig_partitioner.application.coordinator import PartitionCoordinator
from mig_partitioner.domain.services.profile_catalog import ProfileCatalog
from mig_partitioner.infrastructure.config import Config, get_config
from mig_partitioner.infrastructure.logging import setup_logging
from mig_partitioner.infrastructure.metrics import MetricsRegistry, get_metrics
from mig_partitioner.infrastructure.tracing import setup_tracing
from mig_partitioner.ports.outbound import DeviceCapabilityPort


def build_driver(config: Config, catalog: ProfileCatalog) -> DeviceCapabilityPort:
    """Instantiate the driver adapter selected by configuration."""
    if config.driver.backend == "mock":
        from mig_partitioner.adapters.outbound.mock_device_driver import MockDeviceDriver

        return MockDeviceDriver.from_catalog(
            catalog,
            device_count=config.driver.mock_device_count,
            slot_count=config.driver.mock_slot_count,
        )

    from mig_partitioner.adapters.outbound.nvml_device_driver import NvmlDeviceDriver

    return NvmlDeviceDriver()


@dataclass
class Container:
    """Dependency injection container for partition manager components."""

    config: Config
    logger: structlog.stdlib.BoundLogger
    tracer: trace.Tracer
    metrics: MetricsRegistry
    catalog: ProfileCatalog
    driver: DeviceCapabilityPort
    coordinator: PartitionCoordinator

    _instance: "Container | None" = None

    @classmethod
    def create(cls, config: Config | None = None, metrics: MetricsRegistry | None = None) -> "Container":
        """Create and initialize the container with all dependencies."""
        if cls._instance is not None:
            return cls._instance

        config = config or get_config()
        logger = setup_logging(config.observability.log_level, config.observability.log_format)
        tracer = setup_tracing(config)
        metrics = metrics or get_metrics()

        catalog = ProfileCatalog.for_device_model(config.catalog.device_model, config.catalog.extra())
        driver = build_driver(config, catalog)
        coordinator = PartitionCoordinator(
            driver,
            catalog,
            metrics=metrics,
            tracer=tracer,
            locking=config.locking.enabled,
        )
        metrics.info.info({"version": "0.1.0", "backend": config.driver.backend})

        cls._instance = cls(
            config=config,
            logger=logger,
            tracer=tracer,
            metrics=metrics,
            catalog=catalog,
            driver=driver,
            coordinator=coordinator,
        )

        logger.info(
            "mig_partitioner_container_initialized",
            environment=config.observability.environment,
            backend=config.driver.backend,
            device_model=config.catalog.device_model,
        )

        return cls._instance

    @classmethod
    def get(cls) -> "Container":
        """Get the singleton container instance."""
        if cls._instance is None:
            return cls.create()
        return cls._instance

    @classmethod
    def is_initialized(cls) -> bool:
        """Check whether the singleton has been created."""
        return cls._instance is not None

    @classmethod
    def reset(cls) -> None:
        """Release the driver and drop the singleton (useful for testing)."""
        instance, cls._instance = cls._instance, None
        if instance is not None:
            instance.driver.shutdown()
