"""Application configuration."""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables will be loaded and validated using Pydantic.
    """

    app_name: str = "Podcaster"
    version: str = "0.1.0"
    api_prefix: str = "/api/v1"

    # CORS Settings
    cors_origins: list[str] = ["*"]  # Default to allow all in development
    cors_allow_credentials: bool = False

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # Feed channel metadata
    FEED_TITLE: str = "Podcast Generator"
    FEED_DESCRIPTION: str = "AI-generated podcast episodes"
    FEED_LINK: str = "https://podcast-generator.example.com"
    FEED_LANGUAGE: str = "en-us"
    DEFAULT_FEED_SLUG: str = "default"
    FEED_MAX_EPISODES: int = Field(default=100, gt=0)
    FEED_COMPRESSION_ENABLED: bool = True

    # Feed cache
    FEED_CACHE_TTL_SECONDS: int = Field(default=3600, gt=0)  # 1 hour
    FEED_CACHE_MAX_SIZE_BYTES: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    FEED_CACHE_KEY_PREFIX: str = "rss:"
    FEED_CACHE_SWEEP_INTERVAL_SECONDS: float = Field(default=300.0, gt=0)

    # Invalidation
    INVALIDATION_STRATEGY: Literal["immediate", "scheduled", "lazy"] = "immediate"
    INVALIDATION_DRAIN_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)

    # CDN purge collaborator
    CDN_ENABLED: bool = False
    CDN_PURGE_URL: str | None = None
    CDN_API_KEY: str | None = None
    CDN_TIMEOUT: float = 10.0

    # Processing jobs
    JOB_MAX_RETRIES: int = Field(default=3, ge=0)
    STALE_JOB_HOURS: int = Field(default=24, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",  # Allow extra fields in environment
    )

    @model_validator(mode="after")
    def validate_origins(self) -> "Settings":
        """Validate CORS origins."""
        if self.cors_origins == ["*"]:
            self.cors_origins = [
                "http://localhost",
                "http://localhost:8000",
                "http://localhost:3000",
            ]
        return self

    @model_validator(mode="after")
    def validate_cdn(self) -> "Settings":
        """CDN purging needs somewhere to send purge requests."""
        if self.CDN_ENABLED and not self.CDN_PURGE_URL:
            raise ValueError("CDN_PURGE_URL is required when CDN_ENABLED is true")
        return self


# Create settings instance
settings = Settings()
