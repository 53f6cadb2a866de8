"""
SDK settings resolved from the environment (and an optional ``.env``).
"""
from __future__ import annotations

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._version import __version__

DEFAULT_ENDPOINT = "https://spanora.ai/api/v1/traces"


class SpanoraSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_key: Optional[str] = Field(default=None, alias="SPANORA_API_KEY")
    endpoint: str = Field(default=DEFAULT_ENDPOINT, alias="SPANORA_ENDPOINT")

    service_name: str = Field(default="unknown_service", alias="SPANORA_SERVICE_NAME")
    environment: str = Field(default="development", alias="SPANORA_ENVIRONMENT")

    enabled: bool = Field(default=True, alias="SPANORA_ENABLED")
    debug: bool = Field(default=False, alias="SPANORA_DEBUG")
    capture_content: bool = Field(default=False, alias="SPANORA_CAPTURE_CONTENT")

    # Batching
    max_queue_size: int = Field(default=2048, gt=0, alias="SPANORA_MAX_QUEUE_SIZE")
    max_batch_size: int = Field(default=512, gt=0, alias="SPANORA_MAX_BATCH_SIZE")
    flush_interval: float = Field(default=5.0, gt=0, alias="SPANORA_FLUSH_INTERVAL")

    # Transport
    export_timeout: float = Field(default=10.0, gt=0, alias="SPANORA_EXPORT_TIMEOUT")
    max_retries: int = Field(default=3, ge=1, alias="SPANORA_MAX_RETRIES")

    @model_validator(mode="after")
    def _check_batch_fits_queue(self) -> "SpanoraSettings":
        if self.max_batch_size > self.max_queue_size:
            raise ValueError("max_batch_size cannot exceed max_queue_size")
        return self

    @property
    def export_enabled(self) -> bool:
        return self.enabled and bool(self.api_key)

    @property
    def resource(self) -> dict[str, str]:
        return {
            "service_name": self.service_name,
            "environment": self.environment,
            "sdk_name": "spanora-python",
            "sdk_version": __version__,
        }
