"""Application configuration via environment variables."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    environment: Literal["development", "production", "test"] = "development"
    port: int = 3000
    log_level: str = "INFO"

    # Backing object store (S3-compatible). Empty bucket = mock mode.
    s3_region: str = "us-east-1"
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_bucket_name: str = ""
    s3_force_path_style: bool = False
    presigned_url_expiry_seconds: int = 3600

    # Job store and durable queue. No Redis = in-memory store + in-process queue.
    redis_url: Optional[str] = None
    job_ttl_seconds: int = 86400

    # Simulated processing delay
    download_delay_min_ms: int = 10000
    download_delay_max_ms: int = 200000
    download_delay_enabled: bool = True
    progress_tick_min_ms: int = 1000

    # Worker pool
    worker_concurrency: int = 5
    queue_max_retries: int = 3
    queue_retry_backoff_seconds: float = 1.0
    queue_retry_backoff_max_seconds: float = 600.0
    shutdown_grace_seconds: float = 10.0

    # Submission limits
    file_id_min: int = 10000
    file_id_max: int = 100000000
    max_batch_size: int = 1000
    batch_mode: Literal["first", "fan_out"] = "first"

    # HTTP adapter
    request_timeout_ms: int = 30000
    rate_limit_window_ms: int = 60000
    rate_limit_max_requests: int = 100
    cors_origins: str = "*"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("s3_access_key_id", "s3_secret_access_key", "s3_endpoint", "redis_url", mode="before")
    @classmethod
    def empty_as_none(cls, v):
        if v == "":
            return None
        return v

    @field_validator(
        "worker_concurrency",
        "job_ttl_seconds",
        "max_batch_size",
        "progress_tick_min_ms",
        "request_timeout_ms",
        "rate_limit_window_ms",
        "rate_limit_max_requests",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("download_delay_min_ms", "download_delay_max_ms", "queue_max_retries")
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("presigned_url_expiry_seconds")
    @classmethod
    def expiry_at_least_a_minute(cls, v):
        if v < 60:
            raise ValueError("must be >= 60")
        return v

    @model_validator(mode="after")
    def check_ranges(self):
        if self.download_delay_min_ms > self.download_delay_max_ms:
            raise ValueError("download_delay_min_ms must not exceed download_delay_max_ms")
        if self.file_id_min > self.file_id_max:
            raise ValueError("file_id_min must not exceed file_id_max")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def cors_origin_list(self) -> list[str]:
        if self.cors_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
