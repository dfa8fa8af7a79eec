"""
Application configuration using environment variables.
"""
import re
from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEFAULT_API_BASE_URL = "https://api.tu-zi.com/v1"


def normalize_base_url(raw: Optional[str], default: str = DEFAULT_API_BASE_URL) -> str:
    """Normalize a configured API base URL.

    Adds a missing scheme, falls back to the default for empty values or bare
    paths like ``/v1``, and strips trailing slashes.
    """
    base = (raw or "").strip()
    if not base:
        return default

    if not re.match(r"^https?://", base, re.IGNORECASE):
        if base.startswith("/"):
            base = default
        else:
            base = f"https://{base}"

    return re.sub(r"/+$", "", base)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "GenStudio"
    debug: bool = False
    environment: str = "development"

    # Remote generation API
    api_base_url: str = DEFAULT_API_BASE_URL
    api_key: Optional[str] = None  # only used to resume pending jobs on startup
    request_timeout_seconds: float = 60.0
    download_timeout_seconds: float = 300.0

    # Storage
    database_url: str = "sqlite:///./genstudio.db"
    data_dir: str = "./data"

    # Polling
    poll_interval_seconds: float = 5.0
    poll_max_duration_seconds: Optional[float] = None  # None = watch until terminal
    poll_slow_warning_attempts: int = 120
    resume_limit: int = 500

    # Rate limiting
    submit_rate_limit: str = "30/minute"

    # CORS
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("api_base_url", mode="before")
    @classmethod
    def _normalize_api_base_url(cls, value):
        return normalize_base_url(value)

    @field_validator("poll_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        return value


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
