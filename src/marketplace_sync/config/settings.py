"""Configuration management using Pydantic Settings.

Loads configuration from environment variables with .env file support.
"""

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration."""

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    environment: str = "development"

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./marketplace_sync.db"

    # Mercado Livre API Configuration
    meli_api_base: str = "https://api.mercadolibre.com"
    meli_client_id: Optional[str] = None
    meli_client_secret: Optional[str] = None

    # Shopee API Configuration
    shopee_partner_id: Optional[int] = None
    shopee_partner_key: Optional[str] = None
    shopee_host_api: str = "https://partner.shopeemobile.com"

    # Sync Engine Configuration
    page_fetch_concurrency: int = Field(
        default=2,
        validation_alias=AliasChoices("page_fetch_concurrency", "meli_page_fetch_concurrency"),
    )
    sync_time_budget_seconds: float = 30.0
    max_orders_per_invocation: int = 3000
    max_continuations: int = 200

    # Periodic Auto-Sync
    auto_sync_enabled: bool = False
    auto_sync_interval_hours: int = 6

    # Dashboard Configuration
    dashboard_api_key: Optional[str] = None

    # GlitchTip Error Monitoring
    glitchtip_dsn: Optional[str] = None

    # Redis Queue Configuration
    redis_enabled: bool = True
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_max_retries: int = 3
    redis_num_workers: int = 2
    redis_brpop_timeout: int = 30

    @field_validator("page_fetch_concurrency", mode="before")
    @classmethod
    def clamp_concurrency(cls, value):
        """Keep page concurrency within 1..5, falling back to 2 on garbage."""
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            parsed = 0
        if parsed <= 0:
            parsed = 2
        return min(5, max(1, parsed))

    @property
    def meli_base_url(self) -> str:
        return self.meli_api_base.rstrip("/")

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


# Create a global settings instance
settings = Settings()
