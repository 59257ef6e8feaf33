from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "tollclaim-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    source_timezone: str = "America/New_York"
    match_grace_minutes: float = 15.0
    match_low_window_hours: float = 24.0
    match_proximity_meters: float = 1000.0
    job_max_attempts: int = 5
    job_retry_base_seconds: float = 60.0
    job_retry_max_seconds: float = 3600.0
    job_retry_jitter_ratio: float = 0.2
    worker_count: int = 4
    poll_batch_size: int = 10
    poll_interval_seconds: float = 1.0
    max_idle_backoff_seconds: float = 5.0
    max_backoff_seconds: float = 15.0
    claim_timeout_seconds: float = 30.0
    stale_in_flight_seconds: float = 300.0
    reaper_interval_seconds: float = 30.0
    reaper_batch_size: int = 100
    claim_filer_url: str = "http://localhost:8080"
    claim_filer_api_key: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "tollclaim"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="TC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
