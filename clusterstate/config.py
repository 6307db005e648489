"""Settings for the cluster state store, loaded from the environment."""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cluster state settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERSTATE_",
        env_file=".env",
        extra="ignore",
    )

    # Database connection handle
    database_url: str = "sqlite+aiosqlite:///./clusterstate.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30  # seconds
    db_echo: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # Query defaults
    default_page_limit: int = 50
    high_cpu_threshold: float = 0.8
    low_space_threshold: float = 0.9

    # Retention sweeps
    snapshot_retention_days: int = 90
    task_retention_days: int = 30

    # Change detection
    recent_changes_hours: int = 1
    most_active_limit: int = 10
    volatile_fields: list[str] = [
        "updated_at",
        "updatedAt",
        "last_seen",
        "lastSeen",
        "uptime",
    ]

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be json or text")
        return value


settings = Settings()
