from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    api_token: str | None = None
    request_timeout_seconds: float = 30.0
    enrich_delay_seconds: float = 1.0
    page_size: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "amala-intake-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AMALA_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
