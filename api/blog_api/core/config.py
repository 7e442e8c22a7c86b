from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "blog-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    store_backend: Literal["postgres", "memory"] = "postgres"
    search_backend: Literal["elasticsearch", "memory"] = "elasticsearch"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_index: str = "blog-articles"
    elasticsearch_username: str | None = None
    elasticsearch_password: str | None = None
    elasticsearch_timeout_seconds: float = 5.0
    sync_worker_count: int = 4
    sync_max_attempts: int = 5
    sync_retry_base_seconds: float = 0.5
    sync_retry_max_seconds: float = 30.0
    sync_attempt_timeout_seconds: float = 10.0
    sync_dead_letter_capacity: int = 1000
    sync_shutdown_drain_seconds: float = 5.0
    reconcile_batch_size: int = 200
    reconcile_time_budget_seconds: float = 120.0
    scheduled_publish_lookback_seconds: int = 3600
    scheduler_api_key_sha256: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "blog-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BLOG_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
