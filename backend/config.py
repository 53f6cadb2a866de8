"""
Application settings for the Spanora collector.
"""
from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().with_name(".env")

# Dev-only ingestion key, regenerated on every start
_DEV_API_KEY = "dev-" + os.urandom(8).hex()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = Field(default="development", alias="APP_ENV")
    build_version: str = Field(default="dev", alias="BUILD_VERSION")

    # Redis trace/span storage
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    trace_ttl_hours: int = Field(default=72, alias="TRACE_TTL_HOURS")

    # Comma-separated bearer keys accepted on ingestion and read endpoints
    collector_api_keys: str = Field(default="", alias="COLLECTOR_API_KEYS")
    dev_api_key: str = Field(default=_DEV_API_KEY, alias="COLLECTOR_DEV_API_KEY")

    max_batch_spans: int = Field(default=1000, alias="MAX_BATCH_SPANS")

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def api_keys(self) -> set[str]:
        keys = {key.strip() for key in self.collector_api_keys.split(",") if key.strip()}
        if not keys and not self.is_production and self.dev_api_key.strip():
            keys.add(self.dev_api_key.strip())
        return keys

    @property
    def api_keys_use_default(self) -> bool:
        return not self.collector_api_keys.strip()


@lru_cache
def get_settings() -> Settings:
    return Settings()
