from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    topology_config_path: str | None = None
    health_cooldown_seconds: float = 60.0
    health_failure_threshold: int = 3
    redis_url: str | None = None
    health_store_key_prefix: str = "claude-smart-router:health:"
    health_store_ttl_seconds: int = 3600
    backend_timeout_seconds: float = 120.0
    backend_connect_timeout_seconds: float = 5.0
    backend_read_timeout_seconds: float = 120.0
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 5.0
    default_model: str = "claude-3-5-sonnet-20241022"
    default_max_tokens: int = 4096
    anthropic_version: str = "2023-06-01"
    client_signature_rewrite_enabled: bool = False
    router_host: str = "0.0.0.0"
    router_port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
