from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "storefront-service"


class ServiceSettings(BaseSettings):
    """Base settings shared by the storefront FastAPI services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    auto_create_schema: bool = Field(default=True)
    redis_url: str | None = Field(default=None)

    # Courier integration
    delhivery_api_token: str | None = Field(default=None)
    delhivery_api_url: str = Field(default="https://track.delhivery.com")
    delhivery_timeout_seconds: float = Field(default=15.0, gt=0.0)
    delhivery_webhook_secret: str | None = Field(default=None)
    warehouse_pincode: str = Field(default="110059", pattern=r"^\d{6}$")
    warehouse_state: str = Field(default="DL", min_length=2, max_length=2)
    warehouse_name: str = Field(default="Primary Warehouse")
    serviceability_cache_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, ge=0)

    # Admin surface
    admin_api_token: str | None = Field(default=None)
    cron_secret: str | None = Field(default=None)
    edit_rate_limit: int = Field(default=10, ge=1)
    edit_rate_window_seconds: int = Field(default=60, ge=1)

    # Reconciliation
    shipment_sync_enabled: bool = Field(default=False)
    shipment_sync_interval_seconds: int | None = Field(default=None, ge=1)
    shipment_sync_delay_seconds: float = Field(default=1.0, ge=0.0)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )

    @property
    def is_development(self) -> bool:
        return self.environment in {"local", "dev"}

    @property
    def resolved_sync_interval_seconds(self) -> int:
        """Interval for the periodic sync job; shorter outside staging/prod."""

        if self.shipment_sync_interval_seconds is not None:
            return self.shipment_sync_interval_seconds
        return 60 if self.is_development else 15 * 60


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
