"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = "carelink"
    debug: bool = False
    database_url: str = "sqlite:///./carelink.db"

    # JWT
    jwt_secret: str = "change-me-in-production-use-openssl-rand-hex-32"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Location acquisition
    location_fix_timeout_seconds: float = 8.0
    location_distance_filter_m: float = 10.0
    location_stream_retry_seconds: float = 2.0
    location_permission_request_timeout_seconds: float = 30.0
    maps_search_url: str = "https://www.google.com/maps/search/?api=1&query="

    # Notifications
    sos_fallback_display_name: str = "Elderly"


settings = Settings()
