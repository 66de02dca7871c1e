"""
Configuration management for ShelfSense
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "ShelfSense Sync & Analytics"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"  # Empty = console only

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./shelfsense.db"

    # Shopify Admin REST API
    shopify_api_version: str = "2024-07"
    shopify_request_timeout: float = 30.0
    shopify_requests_per_second: float = 2.0  # Shopify: 2 req/sec for regular apps

    # Sync engine
    sync_default_lookback_days: int = 120  # First run window when no cursor exists
    sync_lookback_min_days: int = 1
    sync_lookback_max_days: int = 365
    sync_page_cap: int = 40  # Pages per run before stopping at a page boundary
    sync_time_budget_seconds: Optional[float] = None  # Wall-clock cap per run
    sync_retry_max_attempts: int = 3
    sync_retry_base_delay: float = 2.0  # seconds
    sync_retry_max_delay: float = 30.0  # seconds
    # Stock changes don't bump product.updated_at, so snapshot runs walk the whole catalog
    variants_full_catalog: bool = True

    # Analytics
    slow_mover_rule: str = "windowed"  # stock_no_sales, windowed, windowed_no_gift_cards

    # Scheduler
    scheduler_enabled: bool = False
    sync_interval_minutes: int = 360

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
