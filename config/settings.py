"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Analytics API configuration
    api_base_url: str = "http://localhost:8080/api/v2"
    api_token: Optional[str] = None
    api_timeout_seconds: float = 30.0

    # Cache settings
    cache_default_ttl_seconds: float = 300.0
    cache_max_memory_items: int = 100
    cache_persist_to_storage: bool = True
    cache_storage_prefix: str = "pizzaWorld_cache_"
    cache_db_path: Path = Path("./data/cache.db")
    cache_cleanup_interval_seconds: float = 300.0

    # Preload settings
    preload_batch_delay_seconds: float = 0.5
    preload_verify_attempts: int = 20
    preload_verify_delay_seconds: float = 0.3
    # No per-request timeout unless configured
    preload_fetch_timeout_seconds: Optional[float] = None
    # Used when the API reports no orders at all
    preload_fallback_from_date: str = "2000-01-01"
    # Lives outside the cache namespace so clearing the cache keeps it
    earliest_date_storage_key: str = "pizzaWorld_earliestOrderDate"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
