"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Chunked Uploads Service"
    app_version: str = "0.1.0"
    debug: bool = False
    api_v1_prefix: str = "/api/v1"

    # Environment mode
    environment: str = "development"

    # CORS
    cors_origins: str = ""

    # Backends: "redis" (Redis + MinIO) or "memory" (local development only)
    backend: Literal["redis", "memory"] = "redis"

    # Redis (session records and completion notifications)
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = "redis_secret"
    redis_max_connections: int = 50
    redis_connect_timeout_seconds: float = 5.0

    @property
    def redis_url(self) -> str:
        """Construct Redis URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # MinIO / S3 (chunk blobs)
    minio_host: str = "minio"
    minio_port: int = 9000
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_secure: bool = False
    minio_bucket_chunks: str = "upload-chunks"

    @property
    def minio_endpoint(self) -> str:
        """Construct MinIO endpoint."""
        return f"{self.minio_host}:{self.minio_port}"

    # Completion notifications
    notifications_stream: str = "uploads:notifications"
    notifications_maxlen: int = 100_000
    dedup_window_seconds: int = 300  # same window as an SQS FIFO queue

    # Session records (0 disables expiry; retention is otherwise external)
    session_ttl_seconds: int = 0

    # Request handling
    request_deadline_seconds: float = 30.0
    max_chunk_size_mb: int = 16
    upload_rate_limit: str = "600/minute"

    # Retry profiles
    retry_attempts: int = 4
    retry_base_delay: float = 0.2
    retry_max_delay: float = 5.0
    health_retry_attempts: int = 2
    health_retry_base_delay: float = 0.1
    health_retry_max_delay: float = 0.5

    @property
    def max_chunk_size_bytes(self) -> int:
        return self.max_chunk_size_mb * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()

    # In production, require real secrets and a durable backend
    if settings.environment == "production":
        _weak_defaults = {
            "redis_password": "redis_secret",
            "minio_secret_key": "minioadmin",
        }
        for field, weak_value in _weak_defaults.items():
            if getattr(settings, field, None) == weak_value:
                raise ValueError(
                    f"FATAL: {field.upper()} still has its default value. "
                    f"Set a strong secret via environment variable in production."
                )
        if settings.backend == "memory":
            raise ValueError("FATAL: the in-memory backend cannot be used in production.")

    return settings
