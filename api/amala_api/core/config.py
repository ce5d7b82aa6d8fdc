from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "amala-intake-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    repository_backend: Literal["postgres", "memory"] = "postgres"
    rate_limit_backend: Literal["memory", "postgres"] = "memory"
    submission_rate_limit: int = 10
    submission_rate_window_ms: int = 60_000
    review_rate_limit: int = 10
    review_rate_window_ms: int = 60_000
    places_api_key: str | None = None
    places_base_url: str = "https://places.googleapis.com/v1"
    places_timeout_seconds: float = 8.0
    places_search_radius_meters: float = 500.0
    places_max_photos: int = 5
    places_photo_url_template: str = (
        "/api/proxy/google-photo?photoreference={reference}&maxwidth={max_width}&locationName={location_name}"
    )
    lookup_deadline_seconds: float = 10.0
    dedupe_duplicate_threshold: float = 0.75
    dedupe_review_threshold: float = 0.45
    dedupe_min_name_similarity: float = 0.6
    dedupe_near_radius_meters: float = 25.0
    dedupe_far_radius_meters: float = 250.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "amala-intake-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AMALA_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
