"""
Application Configuration
Loads settings from environment variables.
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "Stylize API"
    DEBUG: bool = False
    API_BASE_URL: str = "http://localhost:8000"  # Base URL for signed local file links
    LOG_LEVEL: str = "INFO"

    # Database - SQLite for local dev, PostgreSQL for production
    DATABASE_URL: str = "sqlite:///./stylize.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # Image Generation (Gemini image models)
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL_STANDARD: str = "gemini-2.5-flash-image"
    GEMINI_MODEL_HIGH: str = "gemini-3-pro-image-preview"
    PROVIDER_NAME: str = "gemini"
    PROVIDER_TIMEOUT_SECONDS: int = 90

    # Storage backend: local, gcs or s3
    STORAGE_BACKEND: str = "local"
    LOCAL_STORAGE_PATH: str = "./uploads"
    GCP_PROJECT_ID: str = ""

    # S3 settings (optional)
    S3_ENDPOINT: str = ""
    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_REGION: str = "us-east-1"

    # One bucket per storage pool
    BUCKET_RAW: str = "stylize-raw-generations"
    BUCKET_PRIVATE: str = "stylize-private-gallery"
    BUCKET_PUBLIC: str = "stylize-transformations"
    BUCKET_DERIVATIVE: str = "stylize-derivatives"
    BUCKET_ARCHIVE: str = "stylize-archive"

    # CDN in front of the public pool
    CDN_BASE_URL: str = ""
    CDN_PURGE_URL: str = ""
    CDN_PURGE_TOKEN: str = ""

    # Signed URLs
    SIGNED_URL_TTL_SECONDS: int = 1800  # 30 minutes
    WRITE_URL_TTL_SECONDS: int = 900
    URL_SIGNING_SECRET: str = "change-me"  # local backend only
    SIGNED_URL_CACHE_ENABLED: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Pipeline guardrails
    MAX_CONCURRENT_JOBS: int = 2
    MAX_PROMPT_LENGTH: int = 2000
    MAX_INSTRUCTION_LENGTH: int = 500
    MAX_REFERENCE_IMAGES: int = 4
    MAX_ATTEMPTS: int = 5
    LEASE_SECONDS: int = 900  # 15 minute execution lease
    STALE_JOB_SECONDS: int = 300
    ESTIMATE_STANDARD_MS: int = 45000
    ESTIMATE_HIGH_MS: int = 60000

    # Backoff schedule for rate-limited retries (seconds)
    RETRY_BACKOFF_SECONDS: List[int] = [30, 120, 600, 1800, 7200]

    # Artifact checks
    ARTIFACT_MIN_DIMENSION: int = 256
    ARTIFACT_MAX_DIMENSION: int = 4096
    ARTIFACT_MAX_BYTES: int = 20 * 1024 * 1024
    ARTIFACT_MAX_ASPECT: float = 3.0
    THUMBNAIL_WIDTH: int = 512
    THUMBNAIL_QUALITY: int = 85

    # Watermarking: visible mark on served images, provenance on all
    WATERMARK_ENABLED: bool = True
    WATERMARK_TEXT: str = "Stylize"
    WATERMARK_OPACITY: float = 0.65

    # Dispatch: "inline" runs steps in the API process, "rq" enqueues them
    DISPATCH_MODE: str = "inline"
    INLINE_WORKER_CONCURRENCY: int = 4
    INLINE_RETRY_DELAY_SECONDS: float = 5.0
    JOB_TIMEOUT_GENERATION: int = 180
    RQ_RETRY_MAX: int = 3
    RQ_RETRY_INTERVALS: List[int] = [30, 120, 600]

    # Recovery sweep
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_BATCH_SIZE: int = 100

    # Internal endpoints
    CRON_SECRET: str = ""
    INTERNAL_API_TOKEN: str = ""

    # Content safety
    PROMPT_DENYLIST: List[str] = []

    @field_validator('GEMINI_API_KEY', 'S3_SECRET_KEY', 'CRON_SECRET', 'INTERNAL_API_TOKEN', mode='before')
    @classmethod
    def strip_secrets(cls, v):
        """Strip whitespace and newlines from secrets loaded from files."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator('STORAGE_BACKEND', 'DISPATCH_MODE', mode='before')
    @classmethod
    def lower_modes(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
