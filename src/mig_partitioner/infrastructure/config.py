"""Configuration for the partition manager."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mig_partitioner.domain.entities.profile import Profile


class DriverConfig(BaseModel):
    """Device driver configuration."""

    backend: Literal["nvml", "mock"] = Field(default="nvml", description="Driver adapter")
    mock_device_count: int = Field(default=1, ge=1, description="Simulated devices (mock backend)")
    mock_slot_count: int = Field(default=8, ge=1, description="Slots per simulated device")


class ProfileSpec(BaseModel):
    """A profile supplied through configuration."""

    instance_template_id: int = Field(ge=0)
    sub_instance_template_id: int = Field(ge=0)
    slot_width: int = Field(ge=1)


class CatalogConfig(BaseModel):
    """Profile catalog configuration."""

    device_model: Literal["A100", "A30"] = Field(default="A100", description="Built-in profile table")
    extra_profiles: dict[str, ProfileSpec] = Field(
        default_factory=dict, description="Profiles added to (or overriding) the built-in table"
    )

    def extra(self) -> list[Profile]:
        return [
            Profile(name, spec.instance_template_id, spec.sub_instance_template_id, spec.slot_width)
            for name, spec in self.extra_profiles.items()
        ]


class LockingConfig(BaseModel):
    """In-process serialization of lifecycle calls."""

    enabled: bool = Field(default=True, description="Serialize calls per (device, placement)")


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="REST API host")
    port: int = Field(default=8080, ge=1, le=65535, description="REST API port")
    metrics_port: int = Field(default=8005, ge=1, le=65535, description="Prometheus metrics port")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    otel_endpoint: str | None = Field(default=None)
    environment: str = Field(default="development")


class Config(BaseSettings):
    """Main configuration for the partition manager."""

    model_config = SettingsConfigDict(
        env_prefix="MIG_PARTITIONER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    driver: DriverConfig = Field(default_factory=DriverConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    locking: LockingConfig = Field(default_factory=LockingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
