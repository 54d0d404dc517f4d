"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (SubscriptionConfig, DispatchConfig, TablesConfig) are
env-overridable via the double-underscore delimiter, e.g.:
    SUBSCRIPTIONS__GRACE_PERIOD_DAYS=10
    DISPATCH__ASSIGNMENT_TIMEOUT_SECONDS=90
    TABLES__SUBSCRIPTIONS=tenant_subscriptions
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SubscriptionConfig(BaseModel):
    """Subscription lifecycle and entitlement parameters."""

    grace_period_days: int = 7
    # Reminder is sent this many days before the grace window closes
    grace_reminder_days_before: int = 3
    max_grace_notifications: int = 2
    # Cancelled subscriptions can be reactivated until period end + window
    reactivation_window_days: int = 30
    default_billing_cycle: str = "monthly"
    # Optimistic-concurrency retries for a single read-modify-write
    max_write_attempts: int = 5
    entitlement_cache_ttl_seconds: int = 300
    entitlement_cache_size: int = 1024
    fallback_plan_slug: str = "free"


class DispatchConfig(BaseModel):
    """Delivery dispatch parameters."""

    # Seconds a driver has to accept before the offer lapses
    assignment_timeout_seconds: int = 120
    max_write_attempts: int = 5
    tracking_code_length: int = 10
    # Minimum seconds between two points kept in the location history
    location_history_interval_seconds: int = 30
    max_location_history: int = 500


class TablesConfig(BaseModel):
    """Supabase table names."""

    subscriptions: str = "subscriptions"
    deliveries: str = "deliveries"
    archived_items: str = "archived_items"
    audit_log: str = "audit_log"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_service_role_key: str = ""

    # Keep all state in process memory even when Supabase is configured
    use_in_memory_store: bool = Field(default=False)

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    subscriptions: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    tables: TablesConfig = Field(default_factory=TablesConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
