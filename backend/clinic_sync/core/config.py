from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from functools import lru_cache
import os


class Settings(BaseSettings):
    """
    Real-time sync client settings
    """

    model_config = SettingsConfigDict(
        env_prefix="CLINIC_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Clinic Sync Client"
    app_version: str = "1.0.0"

    # Environment detection
    environment: str = os.getenv("ENVIRONMENT", "production")

    # Transport
    ws_url: str = "ws://localhost:8080/ws/realtime"
    connect_timeout: float = 10.0

    # Reconnect backoff: base * factor ** attempt, capped, +/- jitter fraction
    reconnect_base_delay: float = 1.0
    reconnect_backoff_factor: float = 2.0
    reconnect_max_delay: float = 30.0
    reconnect_jitter: float = 0.1

    # Heartbeat
    heartbeat_interval: float = 15.0
    heartbeat_timeout: float = 45.0  # no inbound traffic for this long -> link is dead

    # Presence
    liveness_window: float = 30.0
    offline_gc_after: float = 300.0
    cursor_throttle_ms: int = 50
    cursor_idle_timeout: float = 5.0

    # Dashboard channels
    chart_retention_seconds: float = 3600.0
    chart_max_points: int = 100
    table_max_rows: int = 50
    stale_after: float = 60.0

    # Comments
    max_comment_length: int = 2000

    # Notifications
    max_notifications: int = 50
    notification_ttl: Optional[float] = None  # seconds; None keeps transient notifications

    # Logging
    log_level: str = "INFO"
    log_format: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
    )
    log_file: Optional[str] = None
    log_rotation: str = "10 MB"
    log_retention: str = "14 days"


# Create settings instance with caching
@lru_cache()
def get_settings() -> Settings:
    """
    Get cached client settings
    """
    return Settings()
