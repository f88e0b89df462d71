from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "LeadSignal Verification"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Providers
    exa_api_key: str | None = None
    firecrawl_api_key: str | None = None
    openai_api_key: str | None = None

    # Structured completion
    verification_model: str = "gpt-4o-mini"
    verification_temperature: float = 0.1
    verification_completion_retries: int = 2
    verification_completion_timeout_seconds: float = 60.0

    # Verification runtime
    verification_weights_path: str = "configs/verification_weights.v1.yaml"
    verification_unknown_gate_policy: str = "strict"
    verification_fetch_timeout_seconds: float = 10.0
    verification_fetch_concurrency: int = 5
    verification_max_third_party_sources: int = 3
    verification_log_buffer_size: int = 500

    # Cache
    url_cache_ttl_seconds: int = 24 * 60 * 60
    claim_cache_ttl_seconds: int = 8 * 60 * 60
    cache_sweep_interval_seconds: float = 60 * 60

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = []

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "verification"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
